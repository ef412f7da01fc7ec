from typing import Any, Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.report_service import report_service

router = APIRouter()


@router.get("/", response_model=ApiResponse)
def read_reports(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve reports.
    """
    reports = crud.report.get_multi(db, skip=skip, limit=limit)
    return ok([dump(schemas.ReportResponse, r) for r in reports])


@router.post("/", response_model=ApiResponse, status_code=201)
def create_report(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    report_in: schemas.ReportCreate,
) -> Any:
    """
    Create new report.
    """
    report = report_service.create(db, obj_in=report_in, user=current_user.id)
    return ok(dump(schemas.ReportResponse, report))


@router.get("/{report_id}", response_model=ApiResponse)
def read_report(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    report_id: int,
) -> Any:
    """
    Get report by ID.
    """
    return ok(dump(schemas.ReportResponse, report_service.get(db, report_id)))


@router.put("/{report_id}", response_model=ApiResponse)
async def update_report(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    report_id: int,
    report_in: schemas.ReportUpdate,
) -> Any:
    """
    Update a report.
    """
    report = await report_service.update(db, report_id=report_id, obj_in=report_in)
    return ok(dump(schemas.ReportResponse, report))


@router.delete("/{report_id}", response_model=ApiResponse)
async def delete_report(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    report_id: int,
) -> Any:
    """
    Delete a report. 仍被定时任务引用时返回 409。
    """
    report = await report_service.delete(db, report_id=report_id)
    return ok({"id": report.id}, message="Report deleted")


@router.post("/{report_id}/execute")
async def execute_report(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    report_id: int,
    execute_in: Optional[schemas.ReportExecuteRequest] = None,
) -> Response:
    """
    Run a report and return the artifact (json or csv) as the response body.
    """
    execute_in = execute_in or schemas.ReportExecuteRequest()
    artifact = await report_service.execute(
        db, report_id, execute_in.parameters, execute_in.format
    )
    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )
