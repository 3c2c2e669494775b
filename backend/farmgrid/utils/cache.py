"""Redis caching utilities for FarmGrid.

The owner-level rollups (stats, dashboard) walk every plot of every farm,
so their results are cached per owner and dropped on any farm mutation.

Cache keys: {prefix}:{owner_id}:{function_name}
"""

import functools
import json
import logging
from typing import Callable, Optional

import redis.asyncio as redis

from farmgrid.config import settings

logger = logging.getLogger(__name__)

# Global Redis connection pool
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create Redis client connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection (call on app shutdown)."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def owner_key(prefix: str, name: str) -> Callable:
    """key_builder for functions called as ``func(db, owner_id, ...)``."""

    def build(db, owner_id, *args, **kwargs) -> str:
        return f"{prefix}:{owner_id}:{name}"

    return build


def cached(key_builder: Callable, ttl: int = 300):
    """Decorator to cache JSON-serialisable async results in Redis.

    Args:
        key_builder: Builds the Redis key from the call arguments
        ttl: Time-to-live in seconds

    Example:
        @cached(owner_key("farm_stats", "stats"), ttl=120)
        async def farm_stats(db: AsyncSession, owner_id: str) -> dict:
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if not settings.cache_enabled:
                return await func(*args, **kwargs)

            key = key_builder(*args, **kwargs)

            try:
                redis_client = await get_redis()
                cached_value = await redis_client.get(key)
                if cached_value:
                    logger.debug(f"Cache HIT: {key}")
                    return json.loads(cached_value)
                logger.debug(f"Cache MISS: {key}")
            except redis.RedisError as e:
                logger.warning(f"Redis error (falling back to uncached): {e}")
                return await func(*args, **kwargs)

            result = await func(*args, **kwargs)

            if hasattr(result, "model_dump"):
                serialized = result.model_dump(mode="json")
            else:
                serialized = result

            try:
                await redis_client.setex(key, ttl, json.dumps(serialized, default=str))
            except redis.RedisError as e:
                logger.warning(f"Failed to store cache key {key}: {e}")

            return serialized

        return wrapper

    return decorator


async def invalidate_cache(pattern: str):
    """Delete every cache key matching a Redis glob pattern.

    Example:
        await invalidate_cache(f"farm_stats:{owner_id}:*")
    """
    if not settings.cache_enabled:
        return

    try:
        redis_client = await get_redis()
        keys = []
        async for key in redis_client.scan_iter(match=pattern):
            keys.append(key)

        if keys:
            await redis_client.delete(*keys)
            logger.info(f"Invalidated {len(keys)} cache keys matching {pattern}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate cache: {e}")


async def invalidate_owner_stats(owner_id: str):
    await invalidate_cache(f"farm_stats:{owner_id}:*")
