from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.scheduler_service import scheduler_service

router = APIRouter()


@router.get("/", response_model=ApiResponse)
def read_schedules(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    report_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve schedules.
    """
    schedules = crud.schedule.get_multi_filtered(
        db, report_id=report_id, is_active=is_active, skip=skip, limit=limit
    )
    return ok([dump(schemas.ScheduleResponse, s) for s in schedules])


@router.post("/", response_model=ApiResponse, status_code=201)
async def create_schedule(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    schedule_in: schemas.ScheduleCreate,
) -> Any:
    """
    Create new schedule; active schedules start firing immediately.
    """
    schedule = scheduler_service.create(db, obj_in=schedule_in, user=current_user.id)
    await scheduler_service.activate(schedule)
    return ok(dump(schemas.ScheduleResponse, schedule))


@router.post("/executions/{execution_id}/cancel", response_model=ApiResponse)
def cancel_execution(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    execution_id: int,
) -> Any:
    """
    Cancel a pending execution. 非 pending 状态返回 409。
    """
    execution = scheduler_service.cancel_execution(db, execution_id)
    return ok(dump(schemas.ScheduleExecutionResponse, execution))


@router.get("/{schedule_id}", response_model=ApiResponse)
def read_schedule(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    schedule_id: int,
) -> Any:
    """
    Get schedule by ID with its run statistics.
    """
    data = dump(schemas.ScheduleResponse, scheduler_service.get(db, schedule_id))
    data["statistics"] = scheduler_service.statistics(db, schedule_id)
    return ok(data)


@router.put("/{schedule_id}", response_model=ApiResponse)
async def update_schedule(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    schedule_id: int,
    schedule_in: schemas.ScheduleUpdate,
) -> Any:
    """
    Update a schedule; the cron job is reconfigured.
    """
    schedule = await scheduler_service.update(db, schedule_id=schedule_id, obj_in=schedule_in)
    return ok(dump(schemas.ScheduleResponse, schedule))


@router.delete("/{schedule_id}", response_model=ApiResponse)
async def delete_schedule(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    schedule_id: int,
) -> Any:
    """
    Delete a schedule and stop its cron job.
    """
    schedule = await scheduler_service.delete(db, schedule_id=schedule_id)
    return ok({"id": schedule.id}, message="Schedule deleted")


@router.post("/{schedule_id}/toggle", response_model=ApiResponse)
async def toggle_schedule(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    schedule_id: int,
    toggle_in: schemas.ToggleRequest,
) -> Any:
    """
    Activate or deactivate a schedule.
    """
    schedule = await scheduler_service.toggle(db, schedule_id=schedule_id, active=toggle_in.is_active)
    return ok(dump(schemas.ScheduleResponse, schedule))


@router.post("/{schedule_id}/execute", response_model=ApiResponse)
async def execute_schedule(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    schedule_id: int,
) -> Any:
    """
    Run a schedule now. 已有运行中的执行时返回 409。
    """
    execution = await scheduler_service.run(db, schedule_id, trigger="manual")
    return ok(dump(schemas.ScheduleExecutionResponse, execution))


@router.get("/{schedule_id}/executions", response_model=ApiResponse)
def read_schedule_executions(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    schedule_id: int,
    skip: int = 0,
    limit: int = 50,
) -> Any:
    """
    List executions of a schedule, newest first.
    """
    executions = scheduler_service.list_executions(db, schedule_id, skip=skip, limit=limit)
    return ok([dump(schemas.ScheduleExecutionResponse, e) for e in executions])
