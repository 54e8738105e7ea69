"""
ARIS Cache Module
=================

Redis-based TTL cache with fallback to in-memory storage.

Usage:
    from aris.cache import RedisCache

    cache = RedisCache(redis_url=settings.cache.redis_url)
    cache.set("key", {"data": "value"}, ttl_seconds=300)
    result = cache.get("key")
"""

from .redis_cache import RedisCache

__all__ = ["RedisCache"]
