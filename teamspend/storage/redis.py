# ==== REDIS SHORT-TERM CACHE ==== #

"""
Redis client and JSON cache helpers for TeamSpend.

Advisory insights and forecasts are cached here for a few minutes. The
cache is optional: with no REDIS_URL, or with Redis unreachable, every
lookup is a miss and every store is skipped.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import cache_hits_total, cache_misses_total


logger = get_logger(__name__)


# ==== GLOBAL CLIENT INSTANCE ==== #

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get the shared Redis client, creating it on first use.

    Returns:
        Optional[redis.Redis]: Client instance, or None when caching is disabled
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )

    return _redis_client


async def close_redis_client() -> None:
    """Close Redis client connection and reset the global instance."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def check_redis() -> str:
    """Report Redis status for health endpoints."""
    client = get_redis_client()
    if client is None:
        return "disabled"
    try:
        await client.ping()
        return "connected"
    except (redis.RedisError, OSError):
        return "disconnected"


# ==== JSON CACHE HELPERS ==== #


async def cache_get_json(key: str, cache_type: str = "advisory") -> Optional[Any]:
    """Read a JSON value; any Redis failure counts as a miss."""
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = await client.get(key)
    except (redis.RedisError, OSError) as e:
        logger.warning("Cache read failed", key=key, error=str(e))
        cache_misses_total.labels(cache_type=cache_type).inc()
        return None

    if raw is None:
        cache_misses_total.labels(cache_type=cache_type).inc()
        return None

    cache_hits_total.labels(cache_type=cache_type).inc()
    return json.loads(raw)


async def cache_set_json(key: str, value: Any, ttl_seconds: int) -> bool:
    """Store a JSON value with a TTL; failures are logged and ignored."""
    client = get_redis_client()
    if client is None:
        return False

    try:
        await client.set(key, json.dumps(value, default=str), ex=ttl_seconds)
        return True
    except (redis.RedisError, OSError) as e:
        logger.warning("Cache write failed", key=key, error=str(e))
        return False
