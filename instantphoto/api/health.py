"""Health check endpoints"""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.database import get_db
from instantphoto.utils.clock import utcnow

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/")
async def health_check() -> dict[str, Any]:
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "service": "InstantPhoto API",
        "version": "0.1.0",
    }


@router.get("/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """Readiness check including database connectivity"""
    checks = {
        "api": "healthy",
        "database": "unknown",
        "redis": "unknown",
        "payments": "live" if settings.is_payments_configured() else "sandbox",
    }

    try:
        result = await db.execute(text("SELECT 1"))
        checks["database"] = "healthy" if result.scalar() == 1 else "unhealthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"

    # Redis only matters when it carries the notification channel
    if settings.notification_backend == "redis":
        try:
            import redis.asyncio as redis
            client = redis.from_url(str(settings.redis_url))
            await client.ping()
            checks["redis"] = "healthy"
            await client.aclose()
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            checks["redis"] = "unhealthy"
    else:
        checks["redis"] = "disabled"

    overall_status = "healthy"
    if "unhealthy" in checks.values():
        overall_status = "degraded"
    if checks["database"] == "unhealthy":
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat(),
        "checks": checks,
    }


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    """Kubernetes liveness probe endpoint"""
    return {"status": "alive"}
