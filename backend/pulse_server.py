import asyncio
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.routing import Match

# 添加当前目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# 加载 .env 文件 (强制覆盖已存在的环境变量)
env_file = Path(__file__).parent / ".env"
if env_file.exists():
    load_dotenv(env_file, override=True)

from pulse.api.api_v1.api import api_router
from pulse.api.api_v1.endpoints.realtime import ws_router
from pulse.core import metrics
from pulse.core.config import settings
from pulse.core.errors import PulseError
from pulse.core.timeutil import isoformat, utcnow
from pulse.core.tracing import TraceContext, setup_trace_logging
from pulse.db.init_db import check_db_connection, init_db
from pulse.db.session import engine, get_db_session
from pulse.schemas.common import fail
from pulse.services.cache_service import result_cache
from pulse.services.dataset_service import dataset_service
from pulse.services.realtime_service import broadcaster
from pulse.services.scheduler_service import scheduler_service
from pulse.services.service_registry import service_registry

setup_trace_logging(settings.LOG_LEVEL)
logger = logging.getLogger("pulse_server")

HTTP_ERROR_KINDS = {
    400: "BadInput",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "Conflict",
}


async def initialize_scheduler() -> None:
    """初始化定时任务，失败时按间隔重试直到成功"""
    while True:
        try:
            await scheduler_service.initialize_all()
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"定时任务初始化失败，{settings.SCHEDULER_INIT_RETRY_SECONDS}s 后重试: {e}"
            )
            await asyncio.sleep(settings.SCHEDULER_INIT_RETRY_SECONDS)


async def dataset_cleanup_loop() -> None:
    """定期删除过期的非快照数据集"""
    while True:
        await asyncio.sleep(settings.DATASET_CLEANUP_INTERVAL)
        try:
            with get_db_session() as db:
                removed = await dataset_service.cleanup_expired(db)
            if removed:
                logger.info(f"清理过期数据集: {removed} 个")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("数据集清理失败")


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 {settings.PROJECT_NAME} {settings.VERSION} 启动中...")
    init_db()
    await result_cache.connect()
    await broadcaster.start()

    scheduler_task = None
    if settings.SCHEDULER_ENABLED:
        scheduler_task = asyncio.create_task(initialize_scheduler())
    cleanup_task = asyncio.create_task(dataset_cleanup_loop())

    await service_registry.register()
    service_registry.start_heartbeat()
    logger.info(f"✅ 服务已就绪: port={settings.PORT}")

    try:
        yield
    finally:
        logger.info("服务关闭中...")
        await service_registry.stop_heartbeat()
        await service_registry.deregister()
        await broadcaster.shutdown()
        await _cancel(scheduler_task)
        await scheduler_service.stop_all()
        await _cancel(cleanup_task)
        await result_cache.close()
        engine.dispose()
        logger.info("服务已关闭")


app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Analytics back end: data sources, queries, datasets, visualizations, dashboards and scheduled reports",
    version=settings.VERSION,
    lifespan=lifespan,
)

# Set up CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGIN,
    allow_credentials="*" not in settings.CORS_ORIGIN,
    allow_methods=["*"],
    allow_headers=["*"],
)


def route_template(request: Request) -> str:
    """指标使用路由模板 (/api/queries/{query_id}) 而不是实际路径"""
    route = request.scope.get("route")
    if route is not None and getattr(route, "path", None):
        return route.path
    for candidate in request.app.router.routes:
        match, _ = candidate.matches(request.scope)
        if match == Match.FULL:
            return getattr(candidate, "path", request.url.path)
    return "unmatched"


@app.middleware("http")
async def trace_and_metrics(request: Request, call_next):
    start = time.perf_counter()
    with TraceContext(prefix="req") as trace:
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace.trace_id
    path = route_template(request)
    metrics.http_requests_total.inc(
        method=request.method, path=path, status=str(response.status_code)
    )
    metrics.http_request_duration_seconds.observe(
        time.perf_counter() - start, method=request.method, path=path
    )
    return response


@app.exception_handler(PulseError)
async def pulse_error_handler(request: Request, exc: PulseError):
    if exc.status_code >= 500:
        logger.warning(f"请求失败: {request.method} {request.url.path} -> {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=fail(exc.kind, exc.message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content=fail("BadInput", message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    kind = HTTP_ERROR_KINDS.get(exc.status_code, "Internal" if exc.status_code >= 500 else "BadInput")
    return JSONResponse(
        status_code=exc.status_code,
        content=fail(kind, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"未处理的异常: {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=fail("Internal", "Internal server error"))


@app.get("/health")
async def health():
    database_ok = check_db_connection()
    cache = await result_cache.health()
    realtime = broadcaster.stats()
    degraded = not database_ok or (cache["enabled"] and not cache["healthy"])
    body = {
        "status": "degraded" if degraded else "healthy",
        "service": settings.SERVICE_NAME,
        "version": settings.VERSION,
        "timestamp": isoformat(utcnow()),
        "database": "connected" if database_ok else "disconnected",
        "cache": cache,
        "realtime": {"connections": realtime["connections"], "dashboards": realtime["rooms"]},
    }
    return JSONResponse(status_code=503 if degraded else 200, content=body)


@app.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics():
    return PlainTextResponse(
        metrics.render_prometheus_metrics(),
        media_type="text/plain; version=0.0.4",
    )


# Include API router
app.include_router(api_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    ssl_options = {}
    if settings.TLS_ENABLED:
        ssl_options = {"ssl_certfile": settings.TLS_CERT_PATH, "ssl_keyfile": settings.TLS_KEY_PATH}
    uvicorn.run(
        "pulse_server:app",
        host=settings.HOST,
        port=settings.PORT,
        timeout_keep_alive=120,
        **ssl_options,
    )
