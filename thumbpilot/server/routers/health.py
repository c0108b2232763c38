"""
Health check endpoints.
"""

from fastapi import APIRouter, Request

from thumbpilot.common.cache import redis_client
from thumbpilot.common.config import get_settings
from thumbpilot.common.database import db
from thumbpilot.schemas.response import HealthResponse

router = APIRouter()


def _scheduler_running(request: Request) -> bool:
    scheduler = getattr(request.app.state, "scheduler", None)
    return bool(scheduler is not None and scheduler.running)


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Returns service status and dependency health. Redis only carries
    notifications, so its absence degrades but does not fail the service.
    """
    settings = get_settings()

    db_healthy = await db.health_check()
    redis_healthy = await redis_client.health_check() if redis_client.connected else False

    status = "healthy" if (db_healthy and redis_healthy) else "degraded"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        database=db_healthy,
        redis=redis_healthy,
        scheduler=_scheduler_running(request),
    )


@router.get("/ping")
async def ping() -> dict:
    """Simple ping endpoint."""
    return {"pong": True}


@router.get("/ready")
async def readiness_check() -> dict:
    """Readiness check for Kubernetes."""
    if not await db.health_check():
        return {"ready": False, "reason": "Database not ready"}

    return {"ready": True}


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness check for Kubernetes."""
    return {"alive": True}
