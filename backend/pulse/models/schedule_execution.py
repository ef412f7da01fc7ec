"""定时任务执行记录模型"""
from sqlalchemy import Column, BigInteger, Integer, String, Text, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from pulse.core.timeutil import utcnow
from pulse.db.base_class import Base, BigIntPK


class ScheduleExecution(Base):
    """定时任务执行记录表 (只追加)

    state: pending → running → success / failed / cancelled
    """
    __tablename__ = "schedule_executions"

    id = Column(BigIntPK, primary_key=True, index=True, autoincrement=True)
    schedule_id = Column(BigInteger, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    state = Column(String(20), nullable=False, default="pending", index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    delivery = Column(JSON, nullable=False, default=dict)
    artifact_size = Column(Integer, nullable=True)
    trace_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # 关系
    schedule = relationship("Schedule", back_populates="executions")
