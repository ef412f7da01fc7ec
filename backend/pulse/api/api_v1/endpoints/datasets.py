from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.dataset_service import dataset_service

router = APIRouter()


@router.get("/", response_model=ApiResponse)
def read_datasets(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    query_id: Optional[int] = None,
    is_snapshot: Optional[bool] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve datasets (rows not included).
    """
    datasets = crud.dataset.get_multi_filtered(
        db, query_id=query_id, is_snapshot=is_snapshot, skip=skip, limit=limit
    )
    return ok([dump(schemas.DatasetResponse, d) for d in datasets])


@router.post("/", response_model=ApiResponse, status_code=201)
async def create_dataset(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dataset_in: schemas.DatasetCreate,
) -> Any:
    """
    Execute a query and materialize the result as a dataset.
    """
    dataset = await dataset_service.create(
        db,
        query_id=dataset_in.query_id,
        params=dataset_in.parameters,
        name=dataset_in.name,
        is_snapshot=dataset_in.is_snapshot,
        user=current_user.id,
    )
    return ok(dump(schemas.DatasetResponse, dataset))


@router.get("/statistics", response_model=ApiResponse)
def dataset_statistics(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> Any:
    """
    Dataset totals: count, snapshots, expired, rows and bytes.
    """
    return ok(dataset_service.statistics(db))


@router.post("/cleanup", response_model=ApiResponse)
async def cleanup_datasets(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
) -> Any:
    """
    Delete expired non-snapshot datasets now.
    """
    deleted = await dataset_service.cleanup_expired(db)
    return ok({"deleted": deleted})


@router.get("/{dataset_id}", response_model=ApiResponse)
async def read_dataset(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    dataset_id: int,
    rows: bool = False,
    auto_refresh: bool = False,
) -> Any:
    """
    Get dataset by ID; ``rows=true`` includes the materialized rows.
    """
    dataset = await dataset_service.get(db, dataset_id, auto_refresh=auto_refresh)
    model = schemas.DatasetDetail if rows else schemas.DatasetResponse
    return ok(dump(model, dataset))


@router.delete("/{dataset_id}", response_model=ApiResponse)
async def delete_dataset(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dataset_id: int,
) -> Any:
    """
    Delete a dataset.
    """
    dataset = await dataset_service.delete(db, dataset_id)
    return ok({"id": dataset.id}, message="Dataset deleted")


@router.post("/{dataset_id}/refresh", response_model=ApiResponse)
async def refresh_dataset(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dataset_id: int,
) -> Any:
    """
    Re-run the source query with the stored parameters.
    """
    dataset = await dataset_service.refresh(db, dataset_id)
    return ok(dump(schemas.DatasetResponse, dataset))


@router.post("/{dataset_id}/transform", response_model=ApiResponse, status_code=201)
async def transform_dataset(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    dataset_id: int,
    transform_in: schemas.DatasetTransformRequest,
) -> Any:
    """
    Apply filter / project / aggregate / derive operations into a new snapshot.
    """
    dataset = await dataset_service.transform(
        db,
        dataset_id=dataset_id,
        operations=[op.model_dump(exclude_none=True) for op in transform_in.operations],
        name=transform_in.name,
        user=current_user.id,
    )
    return ok(dump(schemas.DatasetResponse, dataset))
