"""定时任务模型"""
from sqlalchemy import Column, BigInteger, Integer, String, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class Schedule(Base):
    """报表定时任务表"""
    __tablename__ = "schedules"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    report_id = Column(BigInteger, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True)
    cron = Column(String(100), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    parameters = Column(JSON, nullable=False, default=dict)
    format = Column(String(20), nullable=False, default="json")
    delivery_channels = Column(JSON, nullable=False, default=list)
    window_start = Column(DateTime, nullable=True)
    window_end = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    next_fire_at = Column(DateTime, nullable=True, index=True)
    last_run_at = Column(DateTime, nullable=True)
    # 执行统计
    run_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # 关系
    executions = relationship(
        "ScheduleExecution", back_populates="schedule", cascade="all, delete-orphan"
    )
