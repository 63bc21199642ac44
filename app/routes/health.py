# app/routes/health.py
"""
Liveness, readiness and queue health endpoints.
"""

import time
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Request

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "activity-intelligence"}


async def _database_check() -> dict:
    t0 = time.time()
    try:
        db_health = await db_health_check()
    except Exception as e:
        return {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

    check = {
        "ok": db_health.get("healthy", False),
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }

    if "pool_stats" in db_health:
        pool_stats = db_health["pool_stats"]
        check.update(
            {
                "pool_size": pool_stats.get("pool_size", 0),
                "pool_available": pool_stats.get("pool_available", 0),
                "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                "connection_time_ms": db_health.get("connection_time_ms", 0),
            }
        )
    if "warnings" in db_health:
        check["warnings"] = db_health["warnings"]
    if not check["ok"]:
        check["error"] = db_health.get("error", "Database unhealthy")
        if "error_type" in db_health:
            check["error_type"] = db_health["error_type"]

    return check


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness: database pool, intelligence engine and required configuration."""
    checks = {"database": await _database_check()}

    engine = getattr(request.app.state, "intelligence_engine", None)
    checks["intelligence_engine"] = {"ok": engine is not None}

    config_issues = []
    if not settings.DATABASE_URL:
        config_issues.append("DATABASE_URL not set")
    if not settings.OPENAI_API_KEY:
        config_issues.append("OPENAI_API_KEY not set")
    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }

    overall_ok = all(check["ok"] for check in checks.values())
    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()


@router.get("/health/queue")
async def queue_health(request: Request):
    """
    Queue backlog health.

    Degraded when the oldest pending entry has waited longer than
    QUEUE_BACKLOG_WARNING_MINUTES, which usually means no worker is polling.
    """
    engine = getattr(request.app.state, "intelligence_engine", None)
    if engine is None:
        return {"healthy": False, "service": "activity_queue", "error": "Engine not initialized"}

    try:
        stats = await engine.queue.get_stats()
    except DatabaseError as e:
        return {"healthy": False, "service": "activity_queue", "error": str(e)}

    health = {"healthy": True, "service": "activity_queue", **stats}

    oldest = stats.get("oldest_pending_at")
    if oldest:
        waited = datetime.now(UTC) - datetime.fromisoformat(oldest)
        health["oldest_pending_age_seconds"] = round(waited.total_seconds())
        if waited > timedelta(minutes=settings.QUEUE_BACKLOG_WARNING_MINUTES):
            health["healthy"] = False
            health["warning"] = f"Oldest pending entry waiting {waited.total_seconds():.0f}s"

    return health
