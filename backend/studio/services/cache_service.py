"""
Redis caching service for read-only projections.

CACHING STRATEGY
================

What we cache:
  - Class availability (capacity, booked, available) per class
    key: "class:{class_id}:availability"
  - User balance per user
    key: "user:{user_id}:balance"

Invalidation strategy:
  - After every committed booking, cancellation or capacity edit: delete the
    class key and the user's balance key
  - After every credit, adjustment or renewal: delete the user's balance key
  - TTL-based expiry as safety net (REDIS_CACHE_TTL)

What is never cached:
  - Anything the booking or cancellation path decides on. Those decisions
    re-read the database under row locks; a stale cached value would be an
    overbooking or an overdraft.

Redis being down is not an error: every getter returns None and the caller
falls back to the database.
"""

import json
from typing import Optional

import redis.asyncio as redis

from studio.core.config import get_settings
from studio.core.logging import get_logger
from studio.core.metrics import record_cache_operation

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def availability_key(class_id: int) -> str:
    return f"class:{class_id}:availability"


def balance_key(user_id: int) -> str:
    return f"user:{user_id}:balance"


async def _get(key: str, operation: str) -> Optional[dict]:
    client = await get_redis()
    if not client:
        return None

    try:
        data = await client.get(key)
    except Exception as e:
        logger.error("cache_get_error", key=key, error=str(e))
        return None

    record_cache_operation(operation, hit=data is not None)
    if data:
        logger.debug("cache_hit", key=key)
        return json.loads(data)
    logger.debug("cache_miss", key=key)
    return None


async def _set(key: str, data: dict) -> None:
    client = await get_redis()
    if not client:
        return

    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except Exception as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def get_cached_availability(class_id: int) -> Optional[dict]:
    return await _get(availability_key(class_id), "availability")


async def set_cached_availability(class_id: int, data: dict) -> None:
    await _set(availability_key(class_id), data)


async def get_cached_balance(user_id: int) -> Optional[dict]:
    return await _get(balance_key(user_id), "balance")


async def set_cached_balance(user_id: int, data: dict) -> None:
    await _set(balance_key(user_id), data)


async def invalidate(class_ids: tuple = (), user_ids: tuple = ()) -> None:
    """Drop the projections touched by a committed write."""
    client = await get_redis()
    if not client:
        return

    keys = [availability_key(c) for c in class_ids if c is not None]
    keys += [balance_key(u) for u in user_ids if u is not None]
    if not keys:
        return
    try:
        deleted = await client.delete(*keys)
        logger.info("cache_invalidated", keys=keys, keys_deleted=deleted)
    except Exception as e:
        logger.error("cache_invalidation_error", keys=keys, error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}
