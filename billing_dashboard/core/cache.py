"""Redis JSON cache used for read-heavy revenue reports.

The cache is strictly optional: every helper logs and degrades to a miss
when Redis is unavailable, so callers never see a cache failure.
"""

import json
import logging
from typing import Any

from billing_dashboard.db.redis import get_redis

logger = logging.getLogger(__name__)

REVENUE_STATS_PREFIX = "revenue:stats"


def revenue_stats_key(period_label: str) -> str:
    """Cache key for the rolling-year statistics ending at ``period_label``."""
    return f"{REVENUE_STATS_PREFIX}:{period_label}"


async def cache_get(key: str) -> Any | None:
    """Get a JSON value from cache, or None on miss/error."""
    try:
        redis = await get_redis()
        value = await redis.get(key)
    except Exception:
        logger.exception("Error getting from cache key '%s'", key)
        return None

    if value is None:
        logger.debug("Cache miss: %s", key)
        return None

    logger.debug("Cache hit: %s", key)
    return json.loads(value)


async def cache_set(key: str, value: Any, ttl: int = 300) -> bool:
    """Store a JSON-serializable value with a TTL in seconds."""
    try:
        redis = await get_redis()
        await redis.setex(key, ttl, json.dumps(value, default=str))
    except Exception:
        logger.exception("Error setting cache key '%s'", key)
        return False

    logger.debug("Cache set: %s (TTL: %ss)", key, ttl)
    return True


async def cache_invalidate(pattern: str) -> int:
    """Delete every key matching ``pattern``; returns the number removed."""
    try:
        redis = await get_redis()
        keys = [key async for key in redis.scan_iter(match=pattern)]
        if not keys:
            return 0
        deleted: int = await redis.delete(*keys)
    except Exception:
        logger.exception("Error invalidating cache pattern '%s'", pattern)
        return 0

    logger.info("Cache invalidated: %s keys matching '%s'", deleted, pattern)
    return deleted


async def invalidate_revenue_stats() -> int:
    """Drop all cached revenue statistics after the aggregate table changed."""
    return await cache_invalidate(f"{REVENUE_STATS_PREFIX}:*")
