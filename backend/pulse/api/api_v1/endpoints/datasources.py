from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.models.data_source import DataSource
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.source_registry import public_config, source_registry

router = APIRouter()


def serialize_source(source: DataSource) -> dict:
    """数据源响应，凭据字段脱敏"""
    data = dump(schemas.DataSourceResponse, source)
    data["config"] = public_config(source.config or {})
    return data


@router.get("/", response_model=ApiResponse)
def read_data_sources(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    kind: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve data sources (soft-deleted ones excluded).
    """
    sources = crud.data_source.get_multi_active(db, kind=kind, skip=skip, limit=limit)
    return ok([serialize_source(s) for s in sources])


@router.post("/", response_model=ApiResponse, status_code=201)
def create_data_source(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    source_in: schemas.DataSourceCreate,
) -> Any:
    """
    Create new data source.
    """
    source = source_registry.create(db, obj_in=source_in, user=current_user.id)
    return ok(serialize_source(source))


@router.get("/{source_id}", response_model=ApiResponse)
def read_data_source(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    source_id: int,
) -> Any:
    """
    Get data source by ID.
    """
    return ok(serialize_source(source_registry.get(db, source_id)))


@router.put("/{source_id}", response_model=ApiResponse)
def update_data_source(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    source_id: int,
    source_in: schemas.DataSourceUpdate,
) -> Any:
    """
    Update a data source.
    """
    source = source_registry.update(db, source_id=source_id, obj_in=source_in)
    return ok(serialize_source(source))


@router.delete("/{source_id}", response_model=ApiResponse)
def delete_data_source(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    source_id: int,
) -> Any:
    """
    Soft-delete a data source. 仍被查询引用时返回 409。
    """
    source = source_registry.delete(db, source_id=source_id)
    return ok({"id": source.id}, message="Data source deleted")


@router.post("/{source_id}/probe", response_model=ApiResponse)
async def probe_data_source(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    source_id: int,
) -> Any:
    """
    Test connectivity of a data source.
    """
    result = await source_registry.probe(db, source_id)
    return ok(result)


@router.post("/{source_id}/discover", response_model=ApiResponse)
async def discover_data_source(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    source_id: int,
) -> Any:
    """
    Discover schema / metadata of a data source and store the snapshot.
    """
    result = await source_registry.discover(db, source_id)
    return ok(result)
