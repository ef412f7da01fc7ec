"""Dashboard模型"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON
from sqlalchemy.orm import relationship

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class Dashboard(Base):
    """Dashboard仪表盘表"""
    __tablename__ = "dashboards"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    layout = Column(JSON, nullable=False, default=dict)
    theme = Column(String(50), nullable=False, default="light")
    refresh_interval = Column(Integer, nullable=True, comment="刷新间隔(秒)")
    is_realtime = Column(Boolean, nullable=False, default=False)
    is_public = Column(Boolean, nullable=False, default=False)
    is_template = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    last_viewed_at = Column(DateTime, nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # 关系
    items = relationship(
        "DashboardItem",
        back_populates="dashboard",
        cascade="all, delete-orphan",
        order_by="DashboardItem.order",
    )
