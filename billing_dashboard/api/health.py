"""Health check endpoints."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.core.config import settings
from billing_dashboard.db.redis import get_redis
from billing_dashboard.db.session import get_db
from billing_dashboard.services.revenue.periods import derive_period, format_period
from billing_dashboard.services.revenue.repository import RevenueRepository

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


@router.get("/health/db")
async def health_check_db(response: Response, db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Database health check: the current month's revenue row must be readable."""
    period = derive_period(datetime.now(UTC))
    try:
        await RevenueRepository(db).find_by_period(period)
        return {"status": "healthy", "database": "connected", "revenue_period": format_period(period)}
    except Exception as e:
        logger.exception("Database health check failed")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "database": str(e)}


@router.get("/health/redis")
async def health_check_redis(response: Response) -> dict[str, str]:
    """Redis health check endpoint.

    The statistics cache is optional, so an unhealthy Redis degrades
    caching but never revenue correctness.
    """
    try:
        redis = await get_redis()
        await redis.ping()
        return {"status": "healthy", "redis": "connected"}
    except Exception as e:
        logger.exception("Redis health check failed")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "redis": str(e)}
