"""Health check endpoints."""

import logging

from fastapi import APIRouter
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from wishcraft.core.config import settings
from wishcraft.core.deps import DBSession, RedisClient
from wishcraft.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DBSession, redis: RedisClient) -> HealthResponse:
    """
    Health check endpoint.

    Checks database and Redis connectivity and returns service status.
    """
    checks: dict[str, str] = {}
    healthy = True

    # Check database connection
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        healthy = False
        checks["database"] = "unhealthy"

    # Redis holds pending OAuth exchanges and rate-limit counters
    try:
        await redis.ping()
        checks["redis"] = "healthy"
    except RedisError:
        logger.exception("Redis health check failed")
        healthy = False
        checks["redis"] = "unhealthy"

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.version,
        environment=settings.environment,
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """
    Liveness check for Kubernetes/container orchestration.

    Simple check that the service is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(db: DBSession) -> dict[str, str]:
    """
    Readiness check for Kubernetes/container orchestration.

    Checks if the service is ready to receive traffic.
    """
    await db.execute(text("SELECT 1"))
    return {"status": "ready"}
