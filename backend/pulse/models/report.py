"""报表模型"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Float, JSON

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class Report(Base):
    """报表表

    definition: {"queryId": 1} 或 {"queries": {"orders": 1, "users": 2}}
    """
    __tablename__ = "reports"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    definition = Column(JSON, nullable=False, default=dict)
    parameter_defs = Column(JSON, nullable=False, default=list)
    filters = Column(JSON, nullable=False, default=list)
    default_format = Column(String(20), nullable=False, default="json")
    execution_count = Column(Integer, nullable=False, default=0)
    avg_execution_time = Column(Float, nullable=False, default=0.0)
    last_executed_at = Column(DateTime, nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
