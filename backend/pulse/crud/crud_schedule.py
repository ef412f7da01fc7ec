"""定时任务 CRUD操作"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import update

from pulse.crud.base import CRUDBase
from pulse.models.schedule import Schedule
from pulse.models.schedule_execution import ScheduleExecution
from pulse.schemas.schedule import ScheduleCreate, ScheduleUpdate, ScheduleExecutionResponse


class CRUDSchedule(CRUDBase[Schedule, ScheduleCreate, ScheduleUpdate]):
    """定时任务 CRUD操作类"""

    def get_active(self, db: Session) -> List[Schedule]:
        return db.query(Schedule).filter(Schedule.is_active.is_(True)).order_by(Schedule.id).all()

    def get_multi_filtered(
        self,
        db: Session,
        *,
        report_id: Optional[int] = None,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Schedule]:
        query = db.query(Schedule)
        if report_id is not None:
            query = query.filter(Schedule.report_id == report_id)
        if is_active is not None:
            query = query.filter(Schedule.is_active == is_active)
        return query.order_by(Schedule.id).offset(skip).limit(limit).all()

    def record_run(
        self,
        db: Session,
        *,
        schedule_id: int,
        succeeded: bool,
        ran_at: datetime,
        next_fire_at: Optional[datetime]
    ) -> None:
        """更新运行统计与下一次触发时间 (单条 UPDATE)"""
        values = {
            "run_count": Schedule.run_count + 1,
            "last_run_at": ran_at,
            "next_fire_at": next_fire_at,
        }
        if succeeded:
            values["success_count"] = Schedule.success_count + 1
        else:
            values["failure_count"] = Schedule.failure_count + 1
        stmt = (
            update(Schedule)
            .where(Schedule.id == schedule_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise

    def set_next_fire(self, db: Session, *, schedule_id: int, next_fire_at: Optional[datetime]) -> None:
        stmt = (
            update(Schedule)
            .where(Schedule.id == schedule_id)
            .values(next_fire_at=next_fire_at)
            .execution_options(synchronize_session=False)
        )
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise


class CRUDScheduleExecution(CRUDBase[ScheduleExecution, ScheduleExecutionResponse, ScheduleExecutionResponse]):
    """定时任务执行记录 CRUD操作类"""

    def get_by_schedule(
        self,
        db: Session,
        *,
        schedule_id: int,
        skip: int = 0,
        limit: int = 50
    ) -> List[ScheduleExecution]:
        return db.query(ScheduleExecution).filter(
            ScheduleExecution.schedule_id == schedule_id
        ).order_by(ScheduleExecution.id.desc()).offset(skip).limit(limit).all()

    def count_running(self, db: Session, *, schedule_id: int) -> int:
        return db.query(ScheduleExecution).filter(
            ScheduleExecution.schedule_id == schedule_id,
            ScheduleExecution.state == "running",
        ).count()

    def fail_interrupted(self, db: Session, *, now: datetime) -> int:
        """进程重启前未完成的执行标记为 failed"""
        stmt = (
            update(ScheduleExecution)
            .where(ScheduleExecution.state.in_(("pending", "running")))
            .values(state="failed", completed_at=now, error="interrupted")
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return result.rowcount or 0


schedule = CRUDSchedule(Schedule)
schedule_execution = CRUDScheduleExecution(ScheduleExecution)
