"""Redis connection management with a shared connection pool."""

import asyncio
import logging
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.asyncio import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from billing_dashboard.core.config import settings

if TYPE_CHECKING:
    from redis.asyncio import Redis
else:
    Redis = object  # type: ignore[misc,assignment]

logger = logging.getLogger(__name__)

redis_client: "Redis | None" = None
redis_pool: ConnectionPool | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> "Redis":
    """Return the process-wide Redis client, creating it on first use."""
    global redis_client, redis_pool

    async with _redis_lock:
        if redis_client is not None:
            return redis_client

        pool = ConnectionPool.from_url(
            str(settings.REDIS_URL),
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_timeout=5.0,
            socket_connect_timeout=2.0,
            health_check_interval=30,
        )
        client = aioredis.Redis(
            connection_pool=pool,
            retry=Retry(ExponentialBackoff(), retries=2),
            retry_on_error=[aioredis.ConnectionError, aioredis.TimeoutError],
        )

        try:
            await client.ping()
        except Exception:
            logger.exception("Failed to initialize Redis connection")
            await pool.disconnect()
            raise

        redis_client, redis_pool = client, pool
        logger.info("Redis connection pool initialized")

    return redis_client


async def close_redis() -> None:
    """Close the Redis client and its pool."""
    global redis_client, redis_pool

    if redis_client is not None:
        try:
            await redis_client.aclose()
        except Exception:
            logger.exception("Error closing Redis client")
        finally:
            redis_client = None

    if redis_pool is not None:
        try:
            await redis_pool.disconnect()
        except Exception:
            logger.exception("Error closing Redis pool")
        finally:
            redis_pool = None
