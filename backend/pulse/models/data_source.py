"""数据源模型"""
from sqlalchemy import Column, String, Text, Boolean, DateTime, JSON

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class DataSource(Base):
    """数据源表

    kind: internal-service / sql / rest，config 中保存连接配置（含凭据）
    """
    __tablename__ = "data_sources"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    kind = Column(String(50), nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    service_tag = Column(String(255), nullable=True)
    metadata_snapshot = Column(JSON, nullable=True, comment="discover 结果快照")
    last_probe_at = Column(DateTime, nullable=True)
    probe_status = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True, index=True)
