"""
Redis cache for computed analytics.

Fitness trends and personal-record tables are expensive to rebuild, so the
routers cache them per athlete. Every helper degrades to a no-op when Redis
is disabled or unreachable.
"""
import json
import logging
from typing import Optional, Any

import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from core.config import settings

logger = logging.getLogger(__name__)

ANALYTICS_PREFIX = "analytics"

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if not settings.CACHE_ENABLED:
        return None

    if _redis_client is not None:
        return _redis_client

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        client.ping()
        logger.info("Redis connection established")
        _redis_client = client
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled.")
        _redis_client = None
        return None


def cache_key(*parts: Any) -> str:
    """Join non-None parts with ':' under the analytics prefix."""
    return ":".join([ANALYTICS_PREFIX] + [str(p) for p in parts if p is not None])


def get_cache(key: str) -> Optional[Any]:
    client = get_redis_client()
    if not client:
        return None

    try:
        value = client.get(key)
        if value:
            return json.loads(value)
        return None
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache get error for key {key}: {e}")
        return None


def set_cache(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    client = get_redis_client()
    if not client:
        return False

    try:
        client.setex(
            key,
            ttl if ttl is not None else settings.CACHE_TTL_ANALYTICS,
            json.dumps(value, default=str),
        )
        return True
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache set error for key {key}: {e}")
        return False


def invalidate_athlete_cache(athlete_id: Any) -> int:
    """Drop every cached analytics payload for one athlete. Returns deleted key count."""
    client = get_redis_client()
    if not client:
        return 0

    pattern = f"{ANALYTICS_PREFIX}:{athlete_id}:*"
    try:
        keys = list(client.scan_iter(match=pattern))
        if keys:
            return client.delete(*keys)
        return 0
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache invalidation error for pattern {pattern}: {e}")
        return 0


def reset_redis_client() -> None:
    """Forget the cached client (tests)."""
    global _redis_client
    _redis_client = None
