"""Cache service: leaderboard snapshot caching.

Backed by Redis in deployments; an in-memory dict with the same TTL
semantics is used in dev/test. Cache failures never fail a read: a miss
simply means the snapshot is rebuilt from the totals store.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class CacheService:
    """Unified caching interface backed by Redis or an in-memory store.

    In production, *redis_client* is a ``redis.Redis`` instance.
    Pass ``None`` to cache in process memory.
    """

    def __init__(
        self,
        redis_client: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._redis = redis_client
        self._memory: dict[str, tuple[float, Any]] = {}  # key -> (expires_at, value)
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def is_redis(self) -> bool:
        return self._redis is not None

    # ── Core operations ─────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Get a value by key. Returns ``None`` on miss, expiry or error."""
        if self._redis is not None:
            try:
                raw = self._redis.get(key)
                if raw is None:
                    return None
                return json.loads(raw)
            except Exception:
                logger.warning("Cache GET failed for %s", key, exc_info=True)
                return None

        with self._lock:
            item = self._memory.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                del self._memory[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int = 900) -> bool:
        """Set a value with TTL (seconds). Default 15 minutes."""
        if self._redis is not None:
            try:
                self._redis.setex(key, ttl, json.dumps(value, default=str))
                return True
            except Exception:
                logger.warning("Cache SET failed for %s", key, exc_info=True)
                return False

        with self._lock:
            self._memory[key] = (self._clock() + ttl, value)
        return True

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if the key existed."""
        if self._redis is not None:
            try:
                return bool(self._redis.delete(key))
            except Exception:
                logger.warning("Cache DELETE failed for %s", key, exc_info=True)
                return False
        with self._lock:
            return self._memory.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern. Returns count deleted.

        Uses Redis SCAN rather than KEYS.
        """
        if self._redis is not None:
            try:
                count = 0
                cursor = 0
                while True:
                    cursor, keys = self._redis.scan(cursor=cursor, match=pattern, count=100)
                    if keys:
                        count += self._redis.delete(*keys)
                    if cursor == 0:
                        break
                return count
            except Exception:
                logger.warning("Cache DELETE_PATTERN failed for %s", pattern, exc_info=True)
                return 0

        with self._lock:
            doomed = [k for k in self._memory if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._memory[k]
        return len(doomed)

    def ping(self) -> bool:
        """Health probe; the in-memory store is always up."""
        if self._redis is None:
            return True
        try:
            return bool(self._redis.ping())
        except Exception:
            logger.warning("Cache PING failed", exc_info=True)
            return False

    def flush(self) -> None:
        """Clear all cached data."""
        if self._redis is not None:
            try:
                self._redis.flushdb()
            except Exception:
                logger.warning("Cache FLUSH failed", exc_info=True)
        else:
            with self._lock:
                self._memory.clear()


def create_cache(backend: str, redis_url: str | None = None) -> CacheService | None:
    """Build the cache selected by ``CACHE_BACKEND`` (``none``/``memory``/``redis``)."""
    if backend == "none":
        return None
    if backend == "memory":
        return CacheService()

    import redis

    client = redis.Redis.from_url(redis_url or "redis://localhost:6379/0")
    logger.info("Leaderboard cache backed by Redis at %s", redis_url)
    return CacheService(client)
