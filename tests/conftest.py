"""Shared pytest fixtures and test configuration."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import pytest
import redis
from fastapi.testclient import TestClient

from deedboard.core.config import Settings
from deedboard.services.aggregator import Aggregator
from deedboard.services.clock import DayBoundaryResolver
from deedboard.services.cohorts import StaticCohortResolver
from deedboard.services.events import InMemoryEventStore
from deedboard.services.leaderboard import LeaderboardRanker
from deedboard.services.totals import InMemoryTotalsStore
from deedboard.workers.recompute_scheduler import RecomputeScheduler


class MockCursor:
    """Mock Oracle cursor supporting context manager and common operations.

    Responses can be registered per SQL fragment; statements matching no
    fragment return the default rows.
    """

    def __init__(self) -> None:
        self.description: list[tuple[str, ...]] | None = None
        self._rows: list[tuple[Any, ...]] = []
        self._execute_log: list[tuple[str, Any]] = []
        self.rowcount: int = 0
        self._responses: list[tuple[str, list[str], list[tuple[Any, ...]]]] = []
        self._failures: list[tuple[str, Exception]] = []
        self._default: tuple[list[tuple[str, ...]] | None, list[tuple[Any, ...]]] = (None, [])

    def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        self._execute_log.append((sql, params))
        for i, (fragment, exc) in enumerate(self._failures):
            if fragment in sql:
                del self._failures[i]
                raise exc
        for fragment, columns, rows in self._responses:
            if fragment in sql:
                self.description = [(col.upper(),) for col in columns]
                self._rows = list(rows)
                self.rowcount = len(rows)
                return
        self.description, self._rows = self._default
        self.rowcount = len(self._rows)

    def executemany(self, sql: str, rows: Iterable[dict[str, Any]]) -> None:
        batch = list(rows)
        self._execute_log.append((sql, batch))
        self.rowcount = len(batch)

    def fetchall(self) -> list[tuple[Any, ...]]:
        return self._rows

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._rows[0] if self._rows else None

    def statements(self) -> list[str]:
        return [sql for sql, _ in self._execute_log]

    def __enter__(self) -> MockCursor:
        return self

    def __exit__(self, *args: Any) -> None:
        pass


class MockConnection:
    """Mock Oracle connection supporting context manager."""

    def __init__(self) -> None:
        self._cursor = MockCursor()
        self._committed = False
        self._rolled_back = False
        self._closed = False

    def cursor(self) -> MockCursor:
        return self._cursor

    def commit(self) -> None:
        self._committed = True

    def rollback(self) -> None:
        self._rolled_back = True

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> MockConnection:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class MockPool:
    """Mock Oracle connection pool."""

    def __init__(self) -> None:
        self._connection = MockConnection()
        self.acquire_error: Exception | None = None

    def acquire(self) -> MockConnection:
        if self.acquire_error is not None:
            raise self.acquire_error
        return self._connection

    def close(self, force: bool = False) -> None:
        pass


@pytest.fixture
def mock_pool() -> MockPool:
    """Provide a mock Oracle connection pool."""
    return MockPool()


@pytest.fixture
def mock_connection(mock_pool: MockPool) -> MockConnection:
    """Provide a mock Oracle connection."""
    return mock_pool._connection


@pytest.fixture
def mock_cursor(mock_connection: MockConnection) -> MockCursor:
    """Provide a mock Oracle cursor."""
    return mock_connection._cursor


# ── Helpers for setting up mock query results ────────────────────────

def set_mock_query_result(
    cursor: MockCursor,
    columns: list[str],
    rows: list[tuple[Any, ...]],
) -> None:
    """Configure the rows returned by statements with no registered response."""
    cursor._default = ([(col.upper(),) for col in columns], rows)


def add_mock_response(
    cursor: MockCursor,
    sql_fragment: str,
    columns: list[str],
    rows: list[tuple[Any, ...]],
) -> None:
    """Return *rows* for every statement containing *sql_fragment*."""
    cursor._responses.append((sql_fragment, columns, rows))


def fail_next(cursor: MockCursor, sql_fragment: str, exc: Exception) -> None:
    """Raise *exc* from the next statement containing *sql_fragment*."""
    cursor._failures.append((sql_fragment, exc))


class FakeRedisHash:
    """Just enough of ``redis.Redis`` hash commands for the pending queue."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, bytes]] = {}
        self.broken = False

    def _check(self) -> None:
        if self.broken:
            raise redis.ConnectionError("redis down")

    def hset(self, key: str, field: str, value: str) -> int:
        self._check()
        fields = self.hashes.setdefault(key, {})
        added = field not in fields
        fields[field] = value.encode()
        return int(added)

    def hgetall(self, key: str) -> dict[bytes, bytes]:
        self._check()
        return {k.encode(): v for k, v in self.hashes.get(key, {}).items()}

    def hdel(self, key: str, *fields: str | bytes) -> int:
        self._check()
        stored = self.hashes.get(key, {})
        names = [f.decode() if isinstance(f, bytes) else f for f in fields]
        return sum(1 for f in names if stored.pop(f, None) is not None)

    def hlen(self, key: str) -> int:
        self._check()
        return len(self.hashes.get(key, {}))


# ── Engine fixtures (in-memory backend) ──────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="testing",
        store_backend="memory",
        cache_backend="none",
        reference_timezone="Asia/Dhaka",
        first_day_of_week="saturday",
        store_retry_backoff_seconds=0,
    )


@pytest.fixture
def resolver() -> DayBoundaryResolver:
    return DayBoundaryResolver("Asia/Dhaka", "saturday")


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def totals_store() -> InMemoryTotalsStore:
    return InMemoryTotalsStore()


@pytest.fixture
def cohorts() -> StaticCohortResolver:
    resolver = StaticCohortResolver(allow_unknown=True)
    resolver.register("alice", country=1, division=3, district=31)
    resolver.register("bob", country=1, division=3, district=32)
    resolver.register("carol", country=1, division=4, district=41)
    return resolver


@pytest.fixture
def aggregator(
    resolver: DayBoundaryResolver,
    event_store: InMemoryEventStore,
    totals_store: InMemoryTotalsStore,
) -> Aggregator:
    return Aggregator(
        resolver=resolver,
        event_store=event_store,
        totals_store=totals_store,
        retry_backoff_seconds=0,
        sleep=lambda _: None,
    )


@pytest.fixture
def ranker(
    resolver: DayBoundaryResolver,
    totals_store: InMemoryTotalsStore,
    cohorts: StaticCohortResolver,
) -> LeaderboardRanker:
    return LeaderboardRanker(resolver, totals_store, cohort_resolver=cohorts)


@pytest.fixture
def scheduler(aggregator: Aggregator, ranker: LeaderboardRanker) -> RecomputeScheduler:
    return RecomputeScheduler(aggregator, ranker=ranker)


@pytest.fixture
def engine(settings: Settings):  # type: ignore[no-untyped-def]
    from deedboard.services.engine import build_engine

    return build_engine(settings)


@pytest.fixture
def app(settings: Settings, engine):  # type: ignore[no-untyped-def]
    """Create a FastAPI test app on the in-memory engine."""
    from deedboard.main import create_app

    return create_app(settings=settings, engine=engine)


@pytest.fixture
def client(app):  # type: ignore[no-untyped-def]
    """Create a test client."""
    return TestClient(app)
