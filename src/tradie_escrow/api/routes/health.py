"""Health check endpoint.

Verifies connectivity to whichever store and outbox backends are
configured, and reports the active gateway. Used by Docker healthchecks,
load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tradie_escrow.api.deps import get_app_settings
from tradie_escrow.config import Settings
from tradie_escrow.logging_config import get_logger
from tradie_escrow.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(settings: Settings = Depends(get_app_settings)) -> HealthResponse:
    db_status = "in_memory"
    redis_status = "not_configured"

    if settings.store_backend == "sql":
        try:
            from tradie_escrow.infrastructure.database.engine import ping_db

            await ping_db()
            db_status = "healthy"
        except Exception as exc:
            db_status = f"unhealthy: {exc}"
            logger.error("health.db_check_failed", error=str(exc))

    if settings.outbox_backend == "redis":
        try:
            from tradie_escrow.infrastructure.redis_client import get_redis

            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    degraded = db_status.startswith("unhealthy") or redis_status.startswith("unhealthy")
    return HealthResponse(
        status="degraded" if degraded else "ok",
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        gateway=settings.gateway_mode,
    )
