"""Pending events: deed events waiting for the totals store to come back.

``RecomputeScheduler.on_event`` parks an event here when the store is
unavailable and every ``on_tick`` retries what it finds. Backed by Redis,
the queue is shared by the API and the worker process, so a worker picks up
events the API accepted during an outage. The in-memory queue only serves
the process that owns it.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

import redis

from deedboard.core.errors import StoreUnavailable
from deedboard.services.events import DeedEvent

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "deedboard:pending_events"


class PendingQueue(ABC):
    """Events keyed by id; re-queuing an event replaces the earlier copy."""

    @abstractmethod
    def put(self, event: DeedEvent) -> None: ...

    @abstractmethod
    def events(self) -> list[DeedEvent]:
        """Queued events, oldest occurrence first."""

    @abstractmethod
    def remove(self, event_id: str) -> None: ...

    @abstractmethod
    def count(self) -> int: ...


class InMemoryPendingQueue(PendingQueue):
    def __init__(self) -> None:
        self._events: dict[str, DeedEvent] = {}
        self._lock = threading.Lock()

    def put(self, event: DeedEvent) -> None:
        with self._lock:
            self._events[event.event_id] = event

    def events(self) -> list[DeedEvent]:
        with self._lock:
            queued = list(self._events.values())
        return sorted(queued, key=lambda e: (e.occurred_at, e.event_id))

    def remove(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)

    def count(self) -> int:
        return len(self._events)


class RedisPendingQueue(PendingQueue):
    """One Redis hash: event id -> event JSON.

    Redis errors surface as ``StoreUnavailable``; an event that can be
    neither applied nor queued is refused rather than dropped.
    """

    def __init__(self, client: Any, key: str = PENDING_EVENTS_KEY) -> None:
        self._redis = client
        self.key = key

    def put(self, event: DeedEvent) -> None:
        try:
            self._redis.hset(self.key, event.event_id, json.dumps(event.to_dict()))
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Pending queue unavailable: {exc}") from exc

    def events(self) -> list[DeedEvent]:
        try:
            raw = self._redis.hgetall(self.key)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Pending queue unavailable: {exc}") from exc

        queued: list[DeedEvent] = []
        for event_id, payload in raw.items():
            try:
                queued.append(DeedEvent.from_dict(json.loads(payload)))
            except (ValueError, KeyError, TypeError):
                logger.error("Discarding unreadable pending event %r", event_id, exc_info=True)
                self._redis.hdel(self.key, event_id)
        return sorted(queued, key=lambda e: (e.occurred_at, e.event_id))

    def remove(self, event_id: str) -> None:
        try:
            self._redis.hdel(self.key, event_id)
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Pending queue unavailable: {exc}") from exc

    def count(self) -> int:
        try:
            return int(self._redis.hlen(self.key))
        except redis.RedisError as exc:
            raise StoreUnavailable(f"Pending queue unavailable: {exc}") from exc


def create_pending_queue(backend: str, redis_url: str | None = None) -> PendingQueue:
    """Build the queue selected by ``PENDING_BACKEND`` (``memory``/``redis``)."""
    if backend == "memory":
        return InMemoryPendingQueue()

    client = redis.Redis.from_url(redis_url or "redis://localhost:6379/0")
    logger.info("Pending events queued in Redis at %s", redis_url)
    return RedisPendingQueue(client)
