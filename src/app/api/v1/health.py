"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready), and startup
(/health/startup) checks. The container platform uses these to determine
if the process is alive, ready to serve traffic, and has completed startup.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, Redis and scheduler state. Returns check results dict."""
    settings = get_settings()
    checks: dict = {"database": "ok", "redis": "ok", "scheduler": "ok"}

    # Check database
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    # Check Redis (optional: single-flight falls back to in-process locks)
    if not settings.REDIS_ENABLED:
        checks["redis"] = "disabled"
    else:
        try:
            redis = get_redis_pool()
            pong = await redis.ping()
            if not pong:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    container = getattr(request.app.state, "sync", None)
    if container is None:
        checks["scheduler"] = "not_initialized"
    elif not container.orchestrator.scheduler_running:
        checks["scheduler"] = "stopped"

    return checks


def _healthy(checks: dict) -> bool:
    return checks.get("database") == "ok" and checks.get("redis") in ("ok", "disabled")


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies DB and Redis connectivity.

    Returns 200 if all pass, 503 if any critical dependency fails.
    """
    checks = await _check_dependencies(request)
    all_healthy = _healthy(checks)

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )


@router.get("/health/startup")
async def startup_check(request: Request):
    """Startup check: readiness plus an initialized sync container."""
    checks = await _check_dependencies(request)
    all_healthy = _healthy(checks) and checks.get("scheduler") != "not_initialized"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "started" if all_healthy else "starting",
            "checks": checks,
        },
    )
