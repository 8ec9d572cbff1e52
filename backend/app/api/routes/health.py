import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness check. Returns 503 during graceful shutdown."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "billing-sync"},
        )
    return {"status": "healthy", "service": "billing-sync"}


@router.get("/ready")
async def readiness_check():
    """Readiness check: database always, Redis only when it backs the idempotency ledger."""
    checks = {"database": False}

    try:
        from app.db.base import get_session_factory

        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e), error_type=type(e).__name__)

    if get_settings().idempotency_backend.lower() == "redis":
        checks["redis"] = False
        try:
            from app.db.redis import get_redis

            await get_redis().ping()
            checks["redis"] = True
        except Exception as e:
            logger.error("readiness_redis_failed", error=str(e), error_type=type(e).__name__)

    all_healthy = all(checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
