"""数据集模型"""
from sqlalchemy import Column, BigInteger, Integer, String, Boolean, DateTime, Float, JSON, ForeignKey

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class Dataset(Base):
    """数据集表

    保存查询结果快照；is_snapshot 为真时 expires_at 必须为空，不参与过期清理
    """
    __tablename__ = "datasets"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=True)
    query_id = Column(BigInteger, ForeignKey("queries.id"), nullable=True, index=True)
    # transform 生成的快照记录来源数据集与操作列表
    source_dataset_id = Column(BigInteger, nullable=True, index=True)
    operations = Column(JSON, nullable=True)
    rows = Column(JSON, nullable=False, default=list)
    result_schema = Column("schema", JSON, nullable=False, default=dict)
    row_count = Column(Integer, nullable=False, default=0)
    column_count = Column(Integer, nullable=False, default=0)
    byte_size = Column(Integer, nullable=False, default=0)
    execution_time = Column(Float, nullable=False, default=0.0)
    parameters = Column(JSON, nullable=False, default=dict)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_snapshot = Column(Boolean, nullable=False, default=False)
    refresh_count = Column(Integer, nullable=False, default=0)
    last_refreshed_at = Column(DateTime, nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
