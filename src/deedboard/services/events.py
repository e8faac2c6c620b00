"""Deed event log: the append-only record of completed deeds.

Events are immutable and identified by ``event_id``. The aggregator only
reads them; appending an already-known event is a no-op so that replays
are harmless.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from deedboard.core.errors import InvalidEvent
from deedboard.services.clock import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeedEvent:
    """A single completed deed, as reported by the event source."""

    event_id: str
    user_id: str
    deed_id: str | None
    point_value: int
    occurred_at: datetime
    recorded_at: datetime
    category: str | None = None

    def __post_init__(self) -> None:
        # Instants are stored in UTC; naive inputs are read as UTC.
        object.__setattr__(self, "occurred_at", ensure_utc(self.occurred_at))
        object.__setattr__(self, "recorded_at", ensure_utc(self.recorded_at))

    def same_deed(self, other: DeedEvent) -> bool:
        """True when *other* reports the same deed.

        ``recorded_at`` is delivery metadata: a client retrying an event gets
        a fresh one, so it takes no part in the comparison.
        """
        return self._identity() == other._identity()

    def _identity(self) -> tuple[Any, ...]:
        return (
            self.event_id,
            self.user_id,
            self.deed_id,
            self.point_value,
            self.occurred_at,
            self.category,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        data["recorded_at"] = self.recorded_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeedEvent:
        occurred = data["occurred_at"]
        recorded = data.get("recorded_at") or occurred
        if isinstance(occurred, str):
            occurred = datetime.fromisoformat(occurred)
        if isinstance(recorded, str):
            recorded = datetime.fromisoformat(recorded)
        deed_id = data.get("deed_id")
        return cls(
            event_id=str(data["event_id"]),
            user_id=str(data["user_id"]),
            deed_id=str(deed_id) if deed_id is not None else None,
            point_value=int(data["point_value"]),
            occurred_at=occurred,
            recorded_at=recorded,
            category=data.get("category"),
        )


def new_event(
    user_id: str,
    point_value: int,
    deed_id: str | None = None,
    occurred_at: datetime | None = None,
    category: str | None = None,
    event_id: str | None = None,
    recorded_at: datetime | None = None,
) -> DeedEvent:
    """Build an event, filling in the id and timestamps."""
    now = datetime.now(tz=UTC)
    return DeedEvent(
        event_id=event_id or uuid.uuid4().hex,
        user_id=user_id,
        deed_id=deed_id,
        point_value=point_value,
        occurred_at=occurred_at or now,
        recorded_at=recorded_at or now,
        category=category,
    )


def validate_event(event: DeedEvent, max_future_skew: timedelta | None = None) -> None:
    """Raise ``InvalidEvent`` unless *event* may be aggregated."""
    if not event.event_id:
        raise InvalidEvent("Event id is required")
    if not event.user_id:
        raise InvalidEvent(f"Event {event.event_id}: user id is required")
    if isinstance(event.point_value, bool) or not isinstance(event.point_value, int):
        raise InvalidEvent(f"Event {event.event_id}: point value must be an integer")
    if event.point_value < 0:
        raise InvalidEvent(f"Event {event.event_id}: point value must not be negative")
    if max_future_skew is not None and event.occurred_at > event.recorded_at + max_future_skew:
        raise InvalidEvent(
            f"Event {event.event_id}: occurred_at {event.occurred_at.isoformat()} "
            f"is after recorded_at {event.recorded_at.isoformat()}"
        )


class EventStore(ABC):
    """Read/write contract for the deed event log."""

    @abstractmethod
    def append(self, event: DeedEvent) -> bool:
        """Store *event*. Returns False if it was already stored.

        Raises ``InvalidEvent`` when the id is taken by a different event.
        """

    @abstractmethod
    def get(self, event_id: str) -> DeedEvent | None:
        """Return a stored event by id."""

    @abstractmethod
    def scan(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeedEvent]:
        """Events with ``start <= occurred_at < end``; ``None`` bounds are open."""

    @abstractmethod
    def find_by_user(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeedEvent]:
        """A user's events in ``[start, end)``."""


class InMemoryEventStore(EventStore):
    """Process-local event log for tests and single-node development.

    Only appends take the lock; readers work on a snapshot of the list.
    """

    def __init__(self, events: list[DeedEvent] | None = None) -> None:
        self._events: list[DeedEvent] = []
        self._by_id: dict[str, DeedEvent] = {}
        self._lock = threading.Lock()
        for event in events or []:
            self.append(event)

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: DeedEvent) -> bool:
        with self._lock:
            existing = self._by_id.get(event.event_id)
            if existing is not None:
                if not existing.same_deed(event):
                    raise InvalidEvent(f"Event id {event.event_id} already used by a different event")
                logger.debug("Duplicate event %s ignored", event.event_id)
                return False
            self._by_id[event.event_id] = event
            self._events.append(event)
            return True

    def get(self, event_id: str) -> DeedEvent | None:
        return self._by_id.get(event_id)

    def scan(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeedEvent]:
        return [e for e in list(self._events) if _within(e.occurred_at, start, end)]

    def find_by_user(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeedEvent]:
        return [
            e
            for e in list(self._events)
            if e.user_id == user_id and _within(e.occurred_at, start, end)
        ]


def _within(instant: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and instant < start:
        return False
    if end is not None and instant >= end:
        return False
    return True
