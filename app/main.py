"""
FastAPI application for the activity intelligence API.

The API process only enqueues work, reads status and schedules manual
sweeps; the queue worker runs in its own process (app.jobs.worker).
"""

import time
from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.activity_intelligence import build_engine_from_settings, intelligence_router
from app.features.activity_intelligence.errors import MissingDependencyError
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import health

setup_logging(log_level=settings.LOG_LEVEL, role="api", json_logs=settings.LOG_JSON)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        await db_pool.initialize(role="api")
    except RuntimeError as e:
        logger.error("Failed to initialize database pool", error=str(e))
        raise

    app.state.intelligence_engine = build_engine_from_settings(settings)
    logger.info(
        "Intelligence engine ready",
        processing_node=app.state.intelligence_engine.config.processing_node,
    )

    yield

    logger.info("Application shutting down")
    app.state.intelligence_engine = None
    await db_pool.close()


app = FastAPI(
    title="Activity Intelligence",
    description="Event ordering, debouncing and intelligence pipeline for sales activities",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(intelligence_router)


@app.exception_handler(MissingDependencyError)
async def missing_dependency_handler(request: Request, exc: MissingDependencyError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    logger.error(
        "Queue store unavailable",
        path=request.url.path,
        operation=exc.operation,
        recoverable=exc.recoverable,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Queue store unavailable"},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Bind a request id for every log line of the request and log its timing."""
    request_id = request.headers.get("x-request-id") or uuid4().hex
    start_time = time.time()

    with structlog.contextvars.bound_contextvars(request_id=request_id):
        response = await call_next(request)
        logger.info(
            "HTTP request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

    response.headers["x-request-id"] = request_id
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
