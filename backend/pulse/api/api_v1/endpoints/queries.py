from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulse import crud, schemas
from pulse.api import deps
from pulse.core.errors import NotFound
from pulse.schemas.common import ApiResponse, dump, ok
from pulse.services.query_engine import query_engine

router = APIRouter()


@router.get("/", response_model=ApiResponse)
def read_queries(
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    data_source_id: Optional[int] = None,
    kind: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    Retrieve saved queries.
    """
    queries = crud.query.get_multi_filtered(
        db, data_source_id=data_source_id, kind=kind, skip=skip, limit=limit
    )
    return ok([dump(schemas.QueryResponse, q) for q in queries])


@router.post("/", response_model=ApiResponse, status_code=201)
def create_query(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    query_in: schemas.QueryCreate,
) -> Any:
    """
    Create new query. 定义会按数据源类型校验 (SQL 只允许 SELECT)。
    """
    query = query_engine.create(db, obj_in=query_in, user=current_user.id)
    return ok(dump(schemas.QueryResponse, query))


@router.post("/test", response_model=ApiResponse)
async def test_query(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    test_in: schemas.QueryTestRequest,
) -> Any:
    """
    Run an unsaved query definition without caching or statistics.
    """
    result = await query_engine.test(
        db,
        source_id=test_in.data_source_id,
        kind=test_in.kind,
        definition=test_in.definition,
        param_defs=[p.model_dump() for p in test_in.parameter_defs],
        params=test_in.parameters,
        deadline=test_in.deadline,
    )
    return ok(result)


@router.get("/{query_id}", response_model=ApiResponse)
def read_query(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    query_id: int,
) -> Any:
    """
    Get query by ID.
    """
    query = crud.query.get(db, query_id)
    if not query:
        raise NotFound("Query", query_id)
    return ok(dump(schemas.QueryResponse, query))


@router.put("/{query_id}", response_model=ApiResponse)
async def update_query(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    query_id: int,
    query_in: schemas.QueryUpdate,
) -> Any:
    """
    Update a query; its cached results are invalidated.
    """
    query = await query_engine.update(db, query_id=query_id, obj_in=query_in)
    return ok(dump(schemas.QueryResponse, query))


@router.delete("/{query_id}", response_model=ApiResponse)
async def delete_query(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    query_id: int,
) -> Any:
    """
    Delete a query. 仍被数据集引用时返回 409。
    """
    query = await query_engine.delete(db, query_id=query_id)
    return ok({"id": query.id}, message="Query deleted")


@router.post("/{query_id}/execute", response_model=ApiResponse)
async def execute_query(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
    query_id: int,
    execute_in: Optional[schemas.QueryExecuteRequest] = None,
) -> Any:
    """
    Execute a saved query with parameters.

    Returns rows, schema, rowCount, columnCount, executionTime and cached.
    """
    execute_in = execute_in or schemas.QueryExecuteRequest()
    result = await query_engine.execute(
        db,
        query_id,
        execute_in.parameters,
        skip_cache=execute_in.skip_cache,
        deadline=execute_in.deadline,
        user=current_user.id,
    )
    return ok(result)


@router.delete("/{query_id}/cache", response_model=ApiResponse)
async def clear_query_cache(
    *,
    db: Session = Depends(deps.get_db),
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    query_id: int,
) -> Any:
    """
    Drop every cached result of a query.
    """
    if not crud.query.get(db, query_id):
        raise NotFound("Query", query_id)
    removed = await query_engine.clear_cache(query_id)
    return ok({"queryId": query_id, "removed": removed})
