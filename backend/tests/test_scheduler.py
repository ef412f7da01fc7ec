"""
定时任务测试
cron 计算、执行状态机、并发保护以及投递结果
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from pulse import crud, schemas
from pulse.core.errors import BadInput, Conflict
from pulse.core.timeutil import utcnow
from pulse.services.cron import cron_next, get_timezone, validate_cron
from pulse.services.delivery_service import DeliveryService
from pulse.services.report_service import report_service
from pulse.services.scheduler_service import CronManager, SchedulerService


@pytest.fixture
def sales_report(db, sales_query):
    return report_service.create(
        db,
        obj_in=schemas.ReportCreate(name="Daily sales", definition={"queryId": sales_query.id}),
    )


@pytest.fixture
def scheduler(tmp_path):
    return SchedulerService(delivery=DeliveryService(str(tmp_path)))


def make_schedule(service, db, report, **kwargs):
    values = {
        "name": "Morning",
        "report_id": report.id,
        "cron": "0 9 * * *",
        "is_active": False,
    }
    values.update(kwargs)
    return service.create(db, obj_in=schemas.ScheduleCreate(**values))


class TestCron:
    """测试 cron 计算"""

    def test_timezone_is_respected(self):
        winter = cron_next("0 9 * * *", "America/New_York", datetime(2024, 1, 15, 12, 0))
        assert winter == datetime(2024, 1, 15, 14, 0)
        summer = cron_next("0 9 * * *", "America/New_York", datetime(2024, 7, 15, 12, 0))
        assert summer == datetime(2024, 7, 15, 13, 0)

    def test_next_is_strictly_after(self):
        start = datetime(2024, 1, 1, 10, 0)
        first = cron_next("0 * * * *", "UTC", start)
        assert first == datetime(2024, 1, 1, 11, 0)
        assert cron_next("0 * * * *", "UTC", first) == datetime(2024, 1, 1, 12, 0)

    def test_invalid_expressions(self):
        with pytest.raises(BadInput):
            validate_cron("* * * *")
        with pytest.raises(BadInput):
            validate_cron("61 * * * *")
        with pytest.raises(BadInput):
            validate_cron("0 0 * * * *")
        assert validate_cron("  */5 * * * * ") == "*/5 * * * *"

    def test_unknown_timezone(self):
        with pytest.raises(BadInput):
            get_timezone("Mars/Olympus")

    def test_schema_rejects_bad_cron(self, sales_report):
        with pytest.raises(ValueError):
            schemas.ScheduleCreate(name="x", report_id=sales_report.id, cron="every day")


class TestCronManager:
    """测试定时任务表"""

    @pytest.mark.asyncio
    async def test_register_cancel_reconfigure(self):
        started = []

        async def job(schedule_id):
            started.append(schedule_id)
            await asyncio.sleep(3600)

        manager = CronManager(job)
        assert await manager.register(1) is True
        assert await manager.register(1) is False
        await asyncio.sleep(0)
        assert manager.is_registered(1)

        await manager.reconfigure(1)
        await asyncio.sleep(0)
        assert started == [1, 1]
        assert manager.snapshot() == {1: True}

        assert await manager.cancel(1) is True
        assert await manager.cancel(1) is False
        assert not manager.is_registered(1)

        await manager.register(2)
        await manager.register(3)
        await manager.stop()
        assert manager.snapshot() == {}


class TestScheduleRuns:
    """测试执行状态机"""

    def test_create_computes_next_fire_only_when_active(self, db, scheduler, sales_report):
        inactive = make_schedule(scheduler, db, sales_report)
        assert inactive.next_fire_at is None
        active = make_schedule(scheduler, db, sales_report, is_active=True)
        assert active.next_fire_at > utcnow()
        assert not scheduler.cron.is_registered(active.id)

    @pytest.mark.asyncio
    async def test_run_with_email_delivery(self, db, scheduler, sales_report):
        schedule = make_schedule(
            scheduler,
            db,
            sales_report,
            format="csv",
            delivery_channels=[{"type": "email", "recipients": ["a@example.com", "b@example.com"]}],
        )
        with patch("pulse.services.delivery_service.smtplib.SMTP") as smtp_cls:
            execution = await scheduler.run(db, schedule.id)

        assert execution.state == "success"
        assert execution.error is None
        assert execution.delivery == {"email": {"success": True, "recipients": 2}}
        assert execution.artifact_size > 0
        assert execution.started_at <= execution.completed_at
        assert execution.trace_id.startswith("sched")

        smtp = smtp_cls.return_value.__enter__.return_value
        message = smtp.send_message.call_args[0][0]
        assert message["To"] == "a@example.com, b@example.com"
        assert message["Subject"] == "[Pulse] Morning"

        schedule = crud.schedule.get(db, schedule.id)
        assert schedule.run_count == 1
        assert schedule.success_count == 1
        assert schedule.last_run_at is not None

    @pytest.mark.asyncio
    async def test_required_channel_failure_fails_execution(self, db, scheduler, sales_report):
        schedule = make_schedule(
            scheduler,
            db,
            sales_report,
            delivery_channels=[
                {"type": "webhook", "url": "https://hooks.example.com/x"},
                {"type": "storage", "name": "archive", "path": "daily"},
            ],
        )
        with patch("pulse.services.http_client.requests.request") as request:
            request.return_value.status_code = 500
            execution = await scheduler.run(db, schedule.id)

        assert execution.state == "failed"
        assert execution.error == "delivery failed: webhook"
        assert execution.delivery["webhook"]["success"] is False
        assert execution.delivery["archive"]["success"] is True
        assert crud.schedule.get(db, schedule.id).failure_count == 1

    @pytest.mark.asyncio
    async def test_optional_channel_failure_still_succeeds(self, db, scheduler, sales_report):
        schedule = make_schedule(
            scheduler,
            db,
            sales_report,
            delivery_channels=[{"type": "email", "recipients": [], "required": False}],
        )
        execution = await scheduler.run(db, schedule.id)
        assert execution.state == "success"
        assert execution.delivery["email"]["success"] is False

    @pytest.mark.asyncio
    async def test_report_failure_is_recorded(self, db, scheduler, sales_report, sales_query):
        schedule = make_schedule(scheduler, db, sales_report)
        crud.query.update(db, db_obj=sales_query, obj_in={"is_active": False})
        execution = await scheduler.run(db, schedule.id)
        assert execution.state == "failed"
        assert execution.error.startswith("NotFound")

    @pytest.mark.asyncio
    async def test_overlapping_runs(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report)
        scheduler._running.add(schedule.id)
        with pytest.raises(Conflict):
            await scheduler.run(db, schedule.id, trigger="manual")
        assert await scheduler.run(db, schedule.id, trigger="cron") is None
        assert crud.schedule_execution.get_by_schedule(db, schedule_id=schedule.id) == []

    @pytest.mark.asyncio
    async def test_fire_advances_and_runs(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report, cron="*/5 * * * *", is_active=True)
        fire_at = schedule.next_fire_at
        scheduler._fire(schedule.id, fire_at)
        await asyncio.gather(*list(scheduler._run_tasks))

        db.expire_all()
        schedule = crud.schedule.get(db, schedule.id)
        assert schedule.next_fire_at > fire_at
        executions = crud.schedule_execution.get_by_schedule(db, schedule_id=schedule.id)
        assert [e.state for e in executions] == ["success"]

    @pytest.mark.asyncio
    async def test_fire_outside_window_skips(self, db, scheduler, sales_report):
        schedule = make_schedule(
            scheduler,
            db,
            sales_report,
            is_active=True,
            window_end=utcnow() - timedelta(days=1),
        )
        scheduler._fire(schedule.id, utcnow())
        assert not scheduler._run_tasks
        assert crud.schedule_execution.get_by_schedule(db, schedule_id=schedule.id) == []


class TestExecutionLifecycle:
    """测试取消与重启恢复"""

    def test_cancel_only_pending(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report)
        execution = crud.schedule_execution.create(
            db, obj_in={"schedule_id": schedule.id, "state": "pending", "delivery": {}}
        )
        cancelled = scheduler.cancel_execution(db, execution.id)
        assert cancelled.state == "cancelled"
        assert cancelled.completed_at is not None
        with pytest.raises(Conflict):
            scheduler.cancel_execution(db, execution.id)

    @pytest.mark.asyncio
    async def test_running_execution_blocks_manual_run(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report)
        crud.schedule_execution.create(
            db, obj_in={"schedule_id": schedule.id, "state": "running", "delivery": {}}
        )
        with pytest.raises(Conflict):
            await scheduler.run(db, schedule.id)

    @pytest.mark.asyncio
    async def test_initialize_marks_interrupted(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report)
        stale = crud.schedule_execution.create(
            db, obj_in={"schedule_id": schedule.id, "state": "running", "delivery": {}}
        )
        assert await scheduler.initialize_all() == 0

        db.expire_all()
        stale = crud.schedule_execution.get(db, stale.id)
        assert stale.state == "failed"
        assert stale.error == "interrupted"

    @pytest.mark.asyncio
    async def test_initialize_registers_active(self, db, scheduler, sales_report):
        active = make_schedule(scheduler, db, sales_report, is_active=True)
        make_schedule(scheduler, db, sales_report)
        assert await scheduler.initialize_all() == 1
        assert scheduler.cron.is_registered(active.id)
        await scheduler.stop_all()
        assert not scheduler.cron.is_registered(active.id)

    @pytest.mark.asyncio
    async def test_toggle(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report)
        toggled = await scheduler.toggle(db, schedule_id=schedule.id, active=True)
        assert toggled.is_active is True
        assert toggled.next_fire_at is not None
        assert scheduler.cron.is_registered(schedule.id)

        toggled = await scheduler.toggle(db, schedule_id=schedule.id, active=False)
        assert toggled.next_fire_at is None
        assert not scheduler.cron.is_registered(schedule.id)

    @pytest.mark.asyncio
    async def test_statistics(self, db, scheduler, sales_report):
        schedule = make_schedule(scheduler, db, sales_report)
        await scheduler.run(db, schedule.id)
        stats = scheduler.statistics(db, schedule.id)
        assert stats["runCount"] == 1
        assert stats["successRate"] == 1.0
        assert stats["registered"] is False


class TestScheduleApi:
    """测试定时任务接口 (只使用未启用的任务)"""

    def test_create_execute_and_list(self, client, sales_report):
        response = client.post(
            "/api/schedules/",
            json={"name": "Nightly", "reportId": sales_report.id, "cron": "0 2 * * *", "isActive": False},
        )
        assert response.status_code == 201
        schedule_id = response.json()["data"]["id"]

        run = client.post(f"/api/schedules/{schedule_id}/execute")
        assert run.status_code == 200
        assert run.json()["data"]["state"] == "success"

        executions = client.get(f"/api/schedules/{schedule_id}/executions").json()["data"]
        assert len(executions) == 1

        detail = client.get(f"/api/schedules/{schedule_id}").json()["data"]
        assert detail["runCount"] == 1
        assert detail["statistics"]["successCount"] == 1

    def test_invalid_cron_is_400(self, client, sales_report):
        response = client.post(
            "/api/schedules/",
            json={"name": "Bad", "reportId": sales_report.id, "cron": "whenever", "isActive": False},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "BadInput"

    def test_cancel_finished_execution_conflicts(self, client, sales_report):
        schedule_id = client.post(
            "/api/schedules/",
            json={"name": "Nightly", "reportId": sales_report.id, "cron": "0 2 * * *", "isActive": False},
        ).json()["data"]["id"]
        execution_id = client.post(f"/api/schedules/{schedule_id}/execute").json()["data"]["id"]
        response = client.post(f"/api/schedules/executions/{execution_id}/cancel")
        assert response.status_code == 409
