"""Tests for the cache service with in-memory and Redis-like backends."""

from __future__ import annotations

import fnmatch
import json
from typing import Any

from deedboard.services.cache import CacheService, create_cache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Just enough of ``redis.Redis`` for the cache service."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}
        self.broken = False

    def _check(self) -> None:
        if self.broken:
            raise ConnectionError("redis down")

    def get(self, key: str) -> Any:
        self._check()
        return self.data.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._check()
        self.data[key] = value.encode()
        self.ttls[key] = ttl

    def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    def scan(self, cursor: int = 0, match: str = "*", count: int = 100) -> tuple[int, list[str]]:
        self._check()
        return 0, [k for k in self.data if fnmatch.fnmatchcase(k, match)]

    def ping(self) -> bool:
        self._check()
        return True

    def flushdb(self) -> None:
        self._check()
        self.data.clear()


class TestInMemoryCache:
    def test_set_and_get(self):
        cache = CacheService()
        cache.set("k", {"a": 1})
        assert cache.get("k") == {"a": 1}
        assert not cache.is_redis

    def test_miss(self):
        assert CacheService().get("nope") is None

    def test_expiry(self):
        clock = FakeClock()
        cache = CacheService(clock=clock)
        cache.set("k", "v", ttl=60)
        clock.now += 59
        assert cache.get("k") == "v"
        clock.now += 1
        assert cache.get("k") is None

    def test_delete(self):
        cache = CacheService()
        cache.set("k", 1)
        assert cache.delete("k") is True
        assert cache.delete("k") is False

    def test_delete_pattern(self):
        cache = CacheService()
        cache.set("leaderboard:day:2026-02-19:global", 1)
        cache.set("leaderboard:day:2026-02-19:district:31", 2)
        cache.set("leaderboard:week:W2026-02-14:global", 3)
        assert cache.delete_pattern("leaderboard:day:2026-02-19:*") == 2
        assert cache.get("leaderboard:week:W2026-02-14:global") == 3

    def test_flush_and_ping(self):
        cache = CacheService()
        cache.set("k", 1)
        cache.flush()
        assert cache.get("k") is None
        assert cache.ping() is True


class TestRedisCache:
    def test_values_are_json(self):
        redis = FakeRedis()
        cache = CacheService(redis)
        assert cache.set("k", {"points": 50}, ttl=30)
        assert json.loads(redis.data["k"]) == {"points": 50}
        assert redis.ttls["k"] == 30
        assert cache.get("k") == {"points": 50}

    def test_delete_pattern_uses_scan(self):
        redis = FakeRedis()
        cache = CacheService(redis)
        cache.set("leaderboard:day:a", 1)
        cache.set("leaderboard:day:b", 2)
        cache.set("other", 3)
        assert cache.delete_pattern("leaderboard:*") == 2
        assert list(redis.data) == ["other"]

    def test_failures_degrade_to_miss(self, caplog):
        redis = FakeRedis()
        cache = CacheService(redis)
        redis.broken = True
        assert cache.get("k") is None
        assert cache.set("k", 1) is False
        assert cache.delete("k") is False
        assert cache.delete_pattern("*") == 0
        assert cache.ping() is False
        cache.flush()
        assert "Cache GET failed" in caplog.text


class TestCreateCache:
    def test_none(self):
        assert create_cache("none") is None

    def test_memory(self):
        cache = create_cache("memory")
        assert isinstance(cache, CacheService)
        assert not cache.is_redis

    def test_redis_client_is_lazy(self):
        cache = create_cache("redis", "redis://localhost:6399/0")
        assert cache.is_redis
