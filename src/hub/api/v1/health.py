"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.hub.config import get_settings
from src.hub.core.database import get_engine
from src.hub.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database and Redis connectivity. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies DB and Redis plus the integration registry.

    Returns 200 if all pass, 503 if any dependency fails. Redis only carries
    the retry hand-off, so its failure degrades but does not fail readiness.
    """
    checks = await _check_dependencies()
    registry = getattr(request.app.state, "integration_registry", None)
    checks["integrations"] = len(registry) if registry is not None else 0

    ready = checks.get("database") == "ok" and registry is not None
    if not ready:
        state = "not_ready"
    elif checks.get("redis") != "ok":
        state = "degraded"
    else:
        state = "ready"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": state, "checks": checks},
    )
