from fastapi import APIRouter

from pulse.api.api_v1.endpoints import (
    cache, dashboards, datasets, datasources, queries,
    realtime, reports, schedules, visualizations
)
from pulse.core.config import settings

api_router = APIRouter()


@api_router.get("/")
async def api_root():
    """API根路径"""
    return {
        "message": "Pulse API",
        "version": settings.VERSION,
        "status": "running",
        "endpoints": {
            "datasources": "/api/datasources/",
            "queries": "/api/queries/",
            "datasets": "/api/datasets/",
            "visualizations": "/api/visualizations/",
            "dashboards": "/api/dashboards/",
            "reports": "/api/reports/",
            "schedules": "/api/schedules/",
            "cache": "/api/cache/stats",
            "realtime": "/pulse-realtime",
            "docs": "/docs",
            "openapi": "/openapi.json"
        }
    }

api_router.include_router(datasources.router, prefix="/datasources", tags=["datasources"])
api_router.include_router(queries.router, prefix="/queries", tags=["queries"])
api_router.include_router(datasets.router, prefix="/datasets", tags=["datasets"])
api_router.include_router(visualizations.router, prefix="/visualizations", tags=["visualizations"])
api_router.include_router(dashboards.router, prefix="/dashboards", tags=["dashboards"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(schedules.router, prefix="/schedules", tags=["schedules"])
api_router.include_router(cache.router, prefix="/cache", tags=["cache"])
api_router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
