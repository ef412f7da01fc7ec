"""
定时任务调度

CronManager: scheduleId → asyncio 任务的映射，register / cancel / reconfigure
都在同一把锁下执行；读取使用快照副本。

每个活动的定时任务对应一个循环任务:
    等待 next_fire_at → 推进 next_fire_at → 后台执行 run()

run() 的执行记录状态机: pending → running → success | failed，
pending 状态可以取消 (cancelled)。同一定时任务不会同时有两个 running 执行：
定时触发时跳过并推进 next_fire_at，手动执行时返回 Conflict。
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from pulse import crud
from pulse.core import metrics
from pulse.core.config import settings
from pulse.core.errors import Conflict, NotFound, PulseError
from pulse.core.timeutil import isoformat, utcnow
from pulse.core.tracing import TraceContext
from pulse.db.session import get_db_session
from pulse.models.schedule import Schedule
from pulse.models.schedule_execution import ScheduleExecution
from pulse.schemas.schedule import ScheduleCreate, ScheduleUpdate
from pulse.services.cron import cron_next, get_timezone, validate_cron
from pulse.services.delivery_service import DeliveryService, channel_name, delivery_service, is_required
from pulse.services.report_service import ReportService, report_service

logger = logging.getLogger(__name__)

JobFactory = Callable[[int], Awaitable[None]]


def in_window(schedule: Schedule, moment: datetime) -> bool:
    if schedule.window_start is not None and moment < schedule.window_start:
        return False
    if schedule.window_end is not None and moment > schedule.window_end:
        return False
    return True


class CronManager:
    """定时任务表"""

    def __init__(self, job_factory: JobFactory):
        self._job_factory = job_factory
        self._jobs: Dict[int, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def snapshot(self) -> Dict[int, bool]:
        """{schedule_id: 是否仍在运行}"""
        return {schedule_id: not task.done() for schedule_id, task in dict(self._jobs).items()}

    def is_registered(self, schedule_id: int) -> bool:
        task = self._jobs.get(schedule_id)
        return task is not None and not task.done()

    def _start(self, schedule_id: int) -> None:
        self._jobs[schedule_id] = asyncio.create_task(self._job_factory(schedule_id))

    @staticmethod
    async def _finish(task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"定时任务循环退出异常: {e}")

    async def register(self, schedule_id: int) -> bool:
        async with self._lock:
            if self.is_registered(schedule_id):
                return False
            self._start(schedule_id)
        logger.info(f"注册定时任务: schedule={schedule_id}")
        return True

    async def cancel(self, schedule_id: int) -> bool:
        async with self._lock:
            task = self._jobs.pop(schedule_id, None)
        await self._finish(task)
        if task is not None:
            logger.info(f"注销定时任务: schedule={schedule_id}")
        return task is not None

    async def reconfigure(self, schedule_id: int) -> None:
        async with self._lock:
            old = self._jobs.pop(schedule_id, None)
            self._start(schedule_id)
        await self._finish(old)
        logger.info(f"重新配置定时任务: schedule={schedule_id}")

    async def stop(self) -> None:
        async with self._lock:
            tasks = list(self._jobs.values())
            self._jobs.clear()
        for task in tasks:
            await self._finish(task)


class SchedulerService:
    """定时任务服务"""

    def __init__(
        self,
        reports: Optional[ReportService] = None,
        delivery: Optional[DeliveryService] = None,
    ):
        self._reports = reports
        self._delivery = delivery
        self.cron = CronManager(self._job_loop)
        self._running: Set[int] = set()
        self._run_tasks: Set[asyncio.Task] = set()

    @property
    def reports(self) -> ReportService:
        return self._reports or report_service

    @property
    def delivery(self) -> DeliveryService:
        return self._delivery or delivery_service

    def get(self, db: Session, schedule_id: int) -> Schedule:
        schedule = crud.schedule.get(db, schedule_id)
        if not schedule:
            raise NotFound("Schedule", schedule_id)
        return schedule

    # ---- 定义管理 ----

    def create(self, db: Session, *, obj_in: ScheduleCreate, user: Optional[str] = None) -> Schedule:
        self.reports.get(db, obj_in.report_id)
        data = obj_in.model_dump()
        data["next_fire_at"] = cron_next(obj_in.cron, obj_in.timezone) if obj_in.is_active else None
        schedule = crud.schedule.create(db, obj_in=data, created_by=user)
        logger.info(
            f"创建定时任务: id={schedule.id}, cron='{schedule.cron}', tz={schedule.timezone}, "
            f"next={schedule.next_fire_at}"
        )
        return schedule

    async def activate(self, schedule: Schedule) -> None:
        if schedule.is_active:
            await self.cron.register(schedule.id)

    async def update(self, db: Session, *, schedule_id: int, obj_in: ScheduleUpdate) -> Schedule:
        schedule = self.get(db, schedule_id)
        update_data = obj_in.model_dump(exclude_unset=True)
        if update_data.get("cron") is not None:
            update_data["cron"] = validate_cron(update_data["cron"])
        if update_data.get("timezone") is not None:
            get_timezone(update_data["timezone"])

        schedule = crud.schedule.update(db, db_obj=schedule, obj_in=update_data)
        next_fire_at = cron_next(schedule.cron, schedule.timezone) if schedule.is_active else None
        crud.schedule.set_next_fire(db, schedule_id=schedule_id, next_fire_at=next_fire_at)
        db.refresh(schedule)

        if schedule.is_active:
            await self.cron.reconfigure(schedule_id)
        else:
            await self.cron.cancel(schedule_id)
        return schedule

    async def delete(self, db: Session, *, schedule_id: int) -> Schedule:
        self.get(db, schedule_id)
        await self.cron.cancel(schedule_id)
        removed = crud.schedule.remove(db, id=schedule_id)
        logger.info(f"删除定时任务: id={schedule_id}")
        return removed

    async def toggle(self, db: Session, *, schedule_id: int, active: bool) -> Schedule:
        schedule = self.get(db, schedule_id)
        next_fire_at = cron_next(schedule.cron, schedule.timezone) if active else None
        schedule = crud.schedule.update(
            db, db_obj=schedule, obj_in={"is_active": active, "next_fire_at": next_fire_at}
        )
        if active:
            await self.cron.register(schedule_id)
        else:
            await self.cron.cancel(schedule_id)
        logger.info(f"定时任务{'启用' if active else '停用'}: id={schedule_id}")
        return schedule

    # ---- 执行 ----

    def _is_running(self, db: Session, schedule_id: int) -> bool:
        return schedule_id in self._running or crud.schedule_execution.count_running(
            db, schedule_id=schedule_id
        ) > 0

    async def run(
        self,
        db: Session,
        schedule_id: int,
        trigger: str = "manual",
    ) -> Optional[ScheduleExecution]:
        """
        执行一次定时任务

        Args:
            schedule_id: 定时任务ID
            trigger: manual | cron

        Returns:
            执行记录；定时触发被跳过时返回 None

        Raises:
            NotFound: 定时任务不存在
            Conflict: 手动执行时该任务已有运行中的执行
        """
        schedule = self.get(db, schedule_id)
        if self._is_running(db, schedule_id):
            if trigger == "manual":
                raise Conflict(f"Schedule {schedule_id} is already running")
            logger.warning(f"定时任务仍在运行，跳过本次触发: schedule={schedule_id}")
            metrics.schedule_execution_total.inc(state="skipped")
            return None

        self._running.add(schedule_id)
        try:
            with TraceContext(prefix="sched") as trace:
                return await self._execute(db, schedule, trigger, trace.trace_id)
        finally:
            self._running.discard(schedule_id)

    async def _execute(self, db: Session, schedule: Schedule, trigger: str, trace_id: str) -> ScheduleExecution:
        execution = crud.schedule_execution.create(
            db,
            obj_in={"schedule_id": schedule.id, "state": "pending", "delivery": {}, "trace_id": trace_id},
        )
        started_at = utcnow()
        execution = crud.schedule_execution.update(
            db, db_obj=execution, obj_in={"state": "running", "started_at": started_at}
        )
        logger.info(f"[{trace_id}] 开始执行定时任务: schedule={schedule.id}, trigger={trigger}")

        start = time.perf_counter()
        delivery: Dict[str, Any] = {}
        artifact_size = None
        error = None
        try:
            artifact = await self.reports.execute(
                db, schedule.report_id, schedule.parameters or {}, schedule.format, skip_cache=True
            )
            artifact_size = artifact.size
            channels = list(schedule.delivery_channels or [])
            context = {
                "scheduleId": schedule.id,
                "scheduleName": schedule.name,
                "executionId": execution.id,
                "reportId": schedule.report_id,
                "generatedAt": isoformat(utcnow()),
            }
            delivery = await self.delivery.deliver(channels, artifact, context)
            failed = [
                channel_name(c) for c in channels
                if is_required(c) and not delivery.get(channel_name(c), {}).get("success")
            ]
            if failed:
                error = f"delivery failed: {', '.join(failed)}"
        except PulseError as e:
            error = f"{e.kind}: {e.message}"
        except Exception as e:
            logger.exception(f"[{trace_id}] 定时任务执行异常: schedule={schedule.id}")
            error = str(e) or type(e).__name__

        state = "failed" if error else "success"
        completed_at = utcnow()
        execution = crud.schedule_execution.update(
            db,
            db_obj=execution,
            obj_in={
                "state": state,
                "completed_at": completed_at,
                "duration_ms": int((time.perf_counter() - start) * 1000),
                "error": error,
                "delivery": delivery,
                "artifact_size": artifact_size,
            },
        )

        next_fire_at = None
        if schedule.is_active:
            next_fire_at = max(
                cron_next(schedule.cron, schedule.timezone, completed_at),
                schedule.next_fire_at or completed_at,
            )
        crud.schedule.record_run(
            db,
            schedule_id=schedule.id,
            succeeded=state == "success",
            ran_at=started_at,
            next_fire_at=next_fire_at,
        )
        metrics.schedule_execution_total.inc(state=state)
        if error:
            logger.warning(f"[{trace_id}] 定时任务执行失败: schedule={schedule.id}, {error}")
        else:
            logger.info(f"[{trace_id}] 定时任务执行成功: schedule={schedule.id}, {execution.duration_ms}ms")
        return execution

    def cancel_execution(self, db: Session, execution_id: int) -> ScheduleExecution:
        """只有 pending 状态的执行可以取消"""
        execution = crud.schedule_execution.get(db, execution_id)
        if not execution:
            raise NotFound("ScheduleExecution", execution_id)
        if execution.state != "pending":
            raise Conflict(f"Execution {execution_id} is {execution.state} and cannot be cancelled")
        execution = crud.schedule_execution.update(
            db, db_obj=execution, obj_in={"state": "cancelled", "completed_at": utcnow()}
        )
        metrics.schedule_execution_total.inc(state="cancelled")
        return execution

    def list_executions(self, db: Session, schedule_id: int, skip: int = 0, limit: int = 50) -> List[ScheduleExecution]:
        self.get(db, schedule_id)
        return crud.schedule_execution.get_by_schedule(db, schedule_id=schedule_id, skip=skip, limit=limit)

    def statistics(self, db: Session, schedule_id: int) -> Dict[str, Any]:
        schedule = self.get(db, schedule_id)
        durations = [
            e.duration_ms for e in crud.schedule_execution.get_by_schedule(db, schedule_id=schedule_id, limit=100)
            if e.duration_ms is not None
        ]
        return {
            "scheduleId": schedule.id,
            "isActive": bool(schedule.is_active),
            "registered": self.cron.is_registered(schedule.id),
            "runCount": schedule.run_count,
            "successCount": schedule.success_count,
            "failureCount": schedule.failure_count,
            "successRate": round(schedule.success_count / schedule.run_count, 4) if schedule.run_count else None,
            "avgDurationMs": round(sum(durations) / len(durations), 1) if durations else None,
            "lastRunAt": isoformat(schedule.last_run_at) if schedule.last_run_at else None,
            "nextFireAt": isoformat(schedule.next_fire_at) if schedule.next_fire_at else None,
        }

    # ---- 定时触发 ----

    async def _job_loop(self, schedule_id: int) -> None:
        while True:
            try:
                with get_db_session() as db:
                    schedule = crud.schedule.get(db, schedule_id)
                    if not schedule or not schedule.is_active:
                        logger.info(f"定时任务已停用或删除，退出循环: schedule={schedule_id}")
                        return
                    fire_at = schedule.next_fire_at
                    if fire_at is None:
                        fire_at = cron_next(schedule.cron, schedule.timezone)
                        crud.schedule.set_next_fire(db, schedule_id=schedule_id, next_fire_at=fire_at)

                delay = (fire_at - utcnow()).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)
                self._fire(schedule_id, fire_at)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"定时任务循环异常: schedule={schedule_id}")
                await asyncio.sleep(settings.SCHEDULER_INIT_RETRY_SECONDS)

    def _fire(self, schedule_id: int, fire_at: datetime) -> None:
        """推进 next_fire_at，窗口内且未在运行时后台执行"""
        with get_db_session() as db:
            schedule = crud.schedule.get(db, schedule_id)
            if not schedule or not schedule.is_active:
                return
            next_fire_at = cron_next(schedule.cron, schedule.timezone, max(fire_at, utcnow()))
            crud.schedule.set_next_fire(db, schedule_id=schedule_id, next_fire_at=next_fire_at)
            if not in_window(schedule, fire_at):
                logger.info(f"触发时间不在执行窗口内，跳过: schedule={schedule_id}, at={fire_at}")
                return
            if self._is_running(db, schedule_id):
                logger.warning(f"定时任务仍在运行，跳过本次触发: schedule={schedule_id}")
                metrics.schedule_execution_total.inc(state="skipped")
                return

        task = asyncio.create_task(self._run_in_background(schedule_id))
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)

    async def _run_in_background(self, schedule_id: int) -> None:
        try:
            with get_db_session() as db:
                await self.run(db, schedule_id, trigger="cron")
        except Exception:
            logger.exception(f"定时任务后台执行失败: schedule={schedule_id}")

    # ---- 生命周期 ----

    async def initialize_all(self) -> int:
        """注册所有活动的定时任务，返回注册数量"""
        now = utcnow()
        with get_db_session() as db:
            interrupted = crud.schedule_execution.fail_interrupted(db, now=now)
            if interrupted:
                logger.warning(f"标记未完成的执行为失败: {interrupted} 条")
            schedules = crud.schedule.get_active(db)
            for schedule in schedules:
                if schedule.next_fire_at is None or schedule.next_fire_at < now:
                    crud.schedule.set_next_fire(
                        db,
                        schedule_id=schedule.id,
                        next_fire_at=cron_next(schedule.cron, schedule.timezone, now),
                    )
            schedule_ids = [s.id for s in schedules]
        for schedule_id in schedule_ids:
            await self.cron.register(schedule_id)
        logger.info(f"✅ 定时任务初始化完成: {len(schedule_ids)} 个")
        return len(schedule_ids)

    async def stop_all(self) -> None:
        await self.cron.stop()
        tasks = list(self._run_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("定时任务已全部停止")


# 全局实例
scheduler_service = SchedulerService()
