"""Dashboard Item模型"""
from sqlalchemy import Column, BigInteger, Integer, String, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class DashboardItem(Base):
    """Dashboard组件表"""
    __tablename__ = "dashboard_items"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    dashboard_id = Column(BigInteger, ForeignKey("dashboards.id", ondelete="CASCADE"), nullable=False, index=True)
    visualization_id = Column(BigInteger, ForeignKey("visualizations.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(JSON, nullable=False, default=lambda: {"x": 0, "y": 0, "w": 4, "h": 4})
    title = Column(String(255), nullable=True)
    order = Column(Integer, nullable=False, default=0)
    is_locked = Column(Boolean, nullable=False, default=False)
    config = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # 关系
    dashboard = relationship("Dashboard", back_populates="items")
