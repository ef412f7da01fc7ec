from typing import Any, Optional

from fastapi import APIRouter, Depends

from pulse.api import deps
from pulse.schemas.common import ApiResponse, ok
from pulse.services.cache_service import result_cache

router = APIRouter()


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> Any:
    """
    Cache backend, hit/miss counters and health.
    """
    return ok({**result_cache.stats(), "health": await result_cache.health()})


@router.post("/flush", response_model=ApiResponse)
async def cache_flush(
    current_user: deps.CurrentUser = Depends(deps.require_editor),
    pattern: Optional[str] = None,
) -> Any:
    """
    Flush cached entries, optionally only keys matching ``pattern`` (e.g. ``pulse:query:*``).
    """
    removed = await result_cache.flush(pattern)
    return ok({"removed": removed, "pattern": pattern or "pulse:*"})
