from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.dashboard_service import dashboard_service

router = APIRouter()


@router.get("/", response_model=ApiResponse)
def read_dashboards(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    is_template: Optional[bool] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve dashboards.
    """
    dashboards = crud.dashboard.get_multi_filtered(
        db, is_template=is_template, search=search, skip=skip, limit=limit
    )
    return ok([dump(schemas.DashboardResponse, d) for d in dashboards])


@router.post("/", response_model=ApiResponse, status_code=201)
def create_dashboard(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_in: schemas.DashboardCreate,
) -> Any:
    """
    Create new dashboard.
    """
    dashboard = dashboard_service.create(db, obj_in=dashboard_in, user=current_user.id)
    return ok(dump(schemas.DashboardResponse, dashboard))


@router.get("/statistics", response_model=ApiResponse)
def dashboard_statistics(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> Any:
    """
    Dashboard totals and most viewed dashboards.
    """
    return ok(dashboard_service.statistics(db))


@router.post("/templates/{template_id}/instantiate", response_model=ApiResponse, status_code=201)
def instantiate_template(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    template_id: int,
    instantiate_in: schemas.InstantiateRequest,
) -> Any:
    """
    Create a dashboard from a template dashboard.
    """
    dashboard = dashboard_service.create_from_template(
        db, template_id=template_id, name=instantiate_in.name, user=current_user.id
    )
    return ok(dump(schemas.DashboardResponse, dashboard))


@router.get("/{dashboard_id}", response_model=ApiResponse)
def read_dashboard(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    dashboard_id: int,
) -> Any:
    """
    Get dashboard by ID with its items.
    """
    return ok(dump(schemas.DashboardResponse, dashboard_service.get(db, dashboard_id)))


@router.put("/{dashboard_id}", response_model=ApiResponse)
async def update_dashboard(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    dashboard_in: schemas.DashboardUpdate,
) -> Any:
    """
    Update a dashboard.
    """
    dashboard = await dashboard_service.update(db, dashboard_id=dashboard_id, obj_in=dashboard_in)
    return ok(dump(schemas.DashboardResponse, dashboard))


@router.delete("/{dashboard_id}", response_model=ApiResponse)
async def delete_dashboard(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
) -> Any:
    """
    Delete a dashboard and its items.
    """
    dashboard = await dashboard_service.delete(db, dashboard_id=dashboard_id)
    return ok({"id": dashboard.id}, message="Dashboard deleted")


@router.get("/{dashboard_id}/render", response_model=ApiResponse)
async def render_dashboard(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    dashboard_id: int,
    auto_refresh: bool = False,
    skip_cache: bool = False,
    skip_view_tracking: bool = False,
) -> Any:
    """
    Compose a dashboard: every item rendered, failures isolated per item.
    """
    composed = await dashboard_service.compose(
        db,
        dashboard_id,
        skip_view_tracking=skip_view_tracking,
        auto_refresh=auto_refresh,
        skip_cache=skip_cache,
    )
    return ok(composed)


@router.post("/{dashboard_id}/items", response_model=ApiResponse, status_code=201)
async def add_dashboard_item(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    item_in: schemas.DashboardItemCreate,
) -> Any:
    """
    Add a visualization to a dashboard.
    """
    item = await dashboard_service.add_item(db, dashboard_id=dashboard_id, obj_in=item_in)
    return ok(dump(schemas.DashboardItemResponse, item))


@router.put("/{dashboard_id}/items/{item_id}", response_model=ApiResponse)
async def update_dashboard_item(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    item_id: int,
    item_in: schemas.DashboardItemUpdate,
) -> Any:
    """
    Update a dashboard item. 锁定的组件不能移动 (409)。
    """
    item = await dashboard_service.update_item(
        db, dashboard_id=dashboard_id, item_id=item_id, obj_in=item_in
    )
    return ok(dump(schemas.DashboardItemResponse, item))


@router.delete("/{dashboard_id}/items/{item_id}", response_model=ApiResponse)
async def remove_dashboard_item(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    item_id: int,
) -> Any:
    """
    Remove an item from a dashboard.
    """
    await dashboard_service.remove_item(db, dashboard_id=dashboard_id, item_id=item_id)
    return ok({"id": item_id}, message="Dashboard item removed")


@router.put("/{dashboard_id}/layout", response_model=ApiResponse)
async def update_dashboard_layout(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    layout_in: schemas.LayoutUpdateRequest,
) -> Any:
    """
    Move several items at once; all positions are applied or none.
    """
    dashboard = await dashboard_service.update_layout(db, dashboard_id=dashboard_id, items=layout_in.items)
    return ok(dump(schemas.DashboardResponse, dashboard))


@router.put("/{dashboard_id}/reorder", response_model=ApiResponse)
async def reorder_dashboard_items(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    reorder_in: schemas.ReorderRequest,
) -> Any:
    """
    Reorder items; the list must contain every item id of the dashboard.
    """
    dashboard = await dashboard_service.reorder_items(
        db, dashboard_id=dashboard_id, item_ids=reorder_in.item_ids
    )
    return ok(dump(schemas.DashboardResponse, dashboard))


@router.post("/{dashboard_id}/clone", response_model=ApiResponse, status_code=201)
def clone_dashboard(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dashboard_id: int,
    clone_in: Optional[schemas.CloneRequest] = None,
) -> Any:
    """
    Copy a dashboard with all of its items.
    """
    name = clone_in.name if clone_in else None
    cloned = dashboard_service.clone(db, dashboard_id=dashboard_id, name=name, user=current_user.id)
    return ok(dump(schemas.DashboardResponse, cloned))
