"""
Redis caching layer.

Graceful degradation: if Redis is not configured or unavailable, every call
behaves like a cache miss and the application keeps working.

Usage:
    from line_summarizer.core.cache import cache

    value = await cache.get("key")
    if value is None:
        value = await expensive_db_query()
        await cache.set("key", value, ttl=300)
"""

from typing import Optional
from redis import asyncio as aioredis
from redis.exceptions import RedisError
from line_summarizer.config import settings
from line_summarizer.core.logging_config import get_logger

logger = get_logger(__name__)


class CacheBackend:
    """Thin async Redis wrapper that never raises on cache errors."""

    def __init__(self):
        self.redis: Optional[aioredis.Redis] = None
        self.enabled = False

    async def initialize(self):
        """Connect to Redis if REDIS_URL is configured."""
        if not settings.REDIS_URL:
            logger.info("cache_disabled", reason="no_redis_url_configured")
            return

        try:
            self.redis = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=2,  # Fast timeout to avoid blocking requests
                socket_connect_timeout=2
            )
            await self.redis.ping()
            self.enabled = True
            logger.info("cache_enabled")
        except (RedisError, OSError) as e:
            logger.warning("cache_initialization_failed", error=str(e))
            self.enabled = False

    async def close(self):
        if self.redis:
            try:
                await self.redis.aclose()
            except (RedisError, OSError) as e:
                logger.error("cache_close_error", error=str(e))

    async def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None on miss, disabled cache or Redis error."""
        if not self.enabled or not self.redis:
            return None

        try:
            value = await self.redis.get(key)
            logger.debug("cache_hit" if value else "cache_miss", key=key)
            return value
        except (RedisError, OSError) as e:
            logger.error("cache_get_error", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl: int = 300) -> bool:
        if not self.enabled or not self.redis:
            return False

        try:
            await self.redis.setex(key, ttl, value)
            logger.debug("cache_set", key=key, ttl=ttl)
            return True
        except (RedisError, OSError) as e:
            logger.error("cache_set_error", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if not self.enabled or not self.redis:
            return False

        try:
            await self.redis.delete(key)
            logger.debug("cache_delete", key=key)
            return True
        except (RedisError, OSError) as e:
            logger.error("cache_delete_error", key=key, error=str(e))
            return False


# Global cache instance
cache = CacheBackend()
