"""
Redis Cache for ARIS
====================

TTL cache with automatic fallback to an in-memory store.

Used for per-tenant configuration that is read on every request
(memory context config, plan features) but changes rarely.

Features:
- TTL-based expiration
- JSON serialization
- Fallback to in-memory if Redis is unavailable or not configured
- Namespace prefixing for key isolation
- Injectable clock for the in-memory store

Usage:
    cache = RedisCache(redis_url="redis://localhost:6379/0")
    cache.set("memory_config:org-1", {"max_context_size": 4000}, ttl_seconds=300)
    result = cache.get("memory_config:org-1")
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class RedisCache:
    """
    Redis-based cache with in-memory fallback.

    Passing redis_url=None skips Redis entirely and keeps everything in
    process memory, which is what the in-memory service graph and tests use.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: str = "aris",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.prefix = prefix
        self._clock = clock
        self._redis: Optional[redis.Redis] = None
        self._memory_cache: Dict[str, Tuple[Optional[float], Any]] = {}

        if redis_url:
            self._connect(redis_url)

    def _connect(self, redis_url: str) -> None:
        """Establish Redis connection, falling back to memory on failure."""
        try:
            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            client.ping()
            self._redis = client
            logger.info(f"Redis cache connected: {redis_url.split('@')[-1]}")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}. Using in-memory cache.")
            self._redis = None

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None if missing or expired."""
        full_key = self._make_key(key)

        if self._redis is None:
            return self._memory_get(full_key)

        try:
            value = self._redis.get(full_key)
            if value is None:
                return None
            return json.loads(value)
        except redis.RedisError as e:
            logger.warning(f"Redis get failed: {e}")
            return self._memory_get(full_key)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl_seconds: Time to live; None keeps the entry until deleted
        """
        full_key = self._make_key(key)

        if self._redis is None:
            return self._memory_set(full_key, value, ttl_seconds)

        try:
            serialized = json.dumps(value)
            if ttl_seconds:
                self._redis.setex(full_key, ttl_seconds, serialized)
            else:
                self._redis.set(full_key, serialized)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis set failed: {e}")
            return self._memory_set(full_key, value, ttl_seconds)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"backend": self.backend}
        if self._redis is None:
            stats["memory_keys"] = len(self._memory_cache)
        return stats

    # =========================================================================
    # MEMORY FALLBACK
    # =========================================================================

    def _memory_get(self, key: str) -> Optional[Any]:
        if key not in self._memory_cache:
            return None

        expires_at, value = self._memory_cache[key]
        if expires_at is not None and self._clock() >= expires_at:
            del self._memory_cache[key]
            return None

        return value

    def _memory_set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> bool:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._memory_cache[key] = (expires_at, value)
        return True

    # =========================================================================
    # UTILITIES
    # =========================================================================

    def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            try:
                self._redis.close()
            except redis.RedisError as e:
                logger.warning(f"Redis close failed: {e}")
            self._redis = None
