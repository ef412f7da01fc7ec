"""查询模型"""
from sqlalchemy import Column, BigInteger, Integer, String, Text, Boolean, DateTime, Float, JSON, ForeignKey
from sqlalchemy.orm import relationship

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class Query(Base):
    """保存的查询表"""
    __tablename__ = "queries"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    data_source_id = Column(BigInteger, ForeignKey("data_sources.id"), nullable=False, index=True)
    kind = Column(String(50), nullable=False)
    definition = Column(JSON, nullable=False, default=dict)
    parameter_defs = Column(JSON, nullable=False, default=list)
    cache_enabled = Column(Boolean, nullable=False, default=True)
    cache_ttl = Column(Integer, nullable=False, default=180, comment="缓存TTL(秒)")
    timeout_ms = Column(Integer, nullable=True)
    # 执行统计
    execution_count = Column(Integer, nullable=False, default=0)
    avg_execution_time = Column(Float, nullable=False, default=0.0, comment="平均耗时(毫秒)")
    last_executed_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # 关系
    data_source = relationship("DataSource")
