from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.visualization_service import visualization_service

router = APIRouter()


@router.get("/", response_model=ApiResponse)
def read_visualizations(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    dataset_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve visualizations.
    """
    visualizations = crud.visualization.get_multi_filtered(
        db, dataset_id=dataset_id, skip=skip, limit=limit
    )
    return ok([dump(schemas.VisualizationResponse, v) for v in visualizations])


@router.post("/", response_model=ApiResponse, status_code=201)
def create_visualization(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    visualization_in: schemas.VisualizationCreate,
) -> Any:
    """
    Create new visualization. 映射字段必须存在于数据集 schema 中。
    """
    visualization = visualization_service.create(db, obj_in=visualization_in, user=current_user.id)
    return ok(dump(schemas.VisualizationResponse, visualization))


@router.get("/{visualization_id}", response_model=ApiResponse)
def read_visualization(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    visualization_id: int,
) -> Any:
    """
    Get visualization by ID, with the dashboards that include it.
    """
    visualization = visualization_service.get(db, visualization_id)
    data = dump(schemas.VisualizationResponse, visualization)
    data["dashboardIds"] = crud.dashboard_item.get_dashboard_ids_for_visualization(
        db, visualization_id=visualization_id
    )
    return ok(data)


@router.put("/{visualization_id}", response_model=ApiResponse)
async def update_visualization(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    visualization_id: int,
    visualization_in: schemas.VisualizationUpdate,
) -> Any:
    """
    Update a visualization; dependent dashboards are invalidated.
    """
    visualization = await visualization_service.update(
        db, visualization_id=visualization_id, obj_in=visualization_in
    )
    return ok(dump(schemas.VisualizationResponse, visualization))


@router.delete("/{visualization_id}", response_model=ApiResponse)
async def delete_visualization(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    visualization_id: int,
) -> Any:
    """
    Delete a visualization and remove it from every dashboard.
    """
    visualization = await visualization_service.delete(db, visualization_id=visualization_id)
    return ok({"id": visualization.id}, message="Visualization deleted")


@router.get("/{visualization_id}/render", response_model=ApiResponse)
async def render_visualization(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    visualization_id: int,
    auto_refresh: bool = False,
    skip_cache: bool = False,
) -> Any:
    """
    Render a visualization into its renderer payload.
    """
    rendered = await visualization_service.render(
        db, visualization_id, auto_refresh=auto_refresh, skip_cache=skip_cache
    )
    return ok(rendered)


@router.post("/{visualization_id}/render", response_model=ApiResponse)
async def render_visualization_with_options(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    visualization_id: int,
    render_in: Optional[schemas.RenderRequest] = None,
) -> Any:
    """
    Render a visualization, options in the request body.
    """
    render_in = render_in or schemas.RenderRequest()
    rendered = await visualization_service.render(
        db, visualization_id, auto_refresh=render_in.auto_refresh, skip_cache=render_in.skip_cache
    )
    return ok(rendered)


@router.post("/{visualization_id}/clone", response_model=ApiResponse, status_code=201)
def clone_visualization(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    visualization_id: int,
    clone_in: Optional[schemas.CloneRequest] = None,
) -> Any:
    """
    Copy a visualization.
    """
    name = clone_in.name if clone_in else None
    cloned = visualization_service.clone(
        db, visualization_id=visualization_id, name=name, user=current_user.id
    )
    return ok(dump(schemas.VisualizationResponse, cloned))
