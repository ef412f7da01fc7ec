"""可视化模型"""
from sqlalchemy import Column, BigInteger, String, Text, DateTime, JSON

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class Visualization(Base):
    """可视化表

    dataset_id 为弱引用：数据集删除后渲染返回 NotFound
    """
    __tablename__ = "visualizations"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    dataset_id = Column(BigInteger, nullable=False, index=True)
    type = Column(String(50), nullable=False)
    renderer = Column(String(50), nullable=False, default="chartjs")
    config = Column(JSON, nullable=False, default=dict)
    data_mapping = Column(JSON, nullable=False, default=dict)
    filters = Column(JSON, nullable=False, default=list)
    aggregations = Column(JSON, nullable=False, default=list)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
