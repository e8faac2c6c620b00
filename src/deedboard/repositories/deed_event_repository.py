"""Deed event repository: the ``deed_events`` append-only log."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import oracledb

from deedboard.core.errors import InvalidEvent
from deedboard.repositories.base import BaseRepository
from deedboard.services.events import DeedEvent, EventStore

_COLUMNS = "event_id, user_id, deed_id, point_value, category, occurred_at, recorded_at"


class DeedEventRepository(BaseRepository, EventStore):
    """Oracle-backed ``EventStore``."""

    def __init__(self, pool: Any) -> None:
        super().__init__(pool=pool, table_name="deed_events", id_column="event_id")

    def append(self, event: DeedEvent) -> bool:
        sql = (
            f"INSERT INTO {self.table_name} ({_COLUMNS}) "
            "VALUES (:event_id, :user_id, :deed_id, :point_value, :category, "
            ":occurred_at, :recorded_at)"
        )
        params = {
            "event_id": event.event_id,
            "user_id": event.user_id,
            "deed_id": event.deed_id,
            "point_value": event.point_value,
            "category": event.category,
            "occurred_at": self._utc(event.occurred_at),
            "recorded_at": self._utc(event.recorded_at),
        }
        try:
            with self._transaction() as conn, conn.cursor() as cur:
                self._execute(cur, sql, params)
        except oracledb.IntegrityError as exc:
            existing = self.get(event.event_id)
            if existing is None:
                raise InvalidEvent(f"Event {event.event_id} rejected by the store: {exc}") from None
            if not existing.same_deed(event):
                raise InvalidEvent(
                    f"Event id {event.event_id} already used by a different event"
                ) from None
            return False
        return True

    def get(self, event_id: str) -> DeedEvent | None:
        row = self.find_by_id(event_id)
        return _to_event(row) if row else None

    def scan(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeedEvent]:
        where, params = _range_clause(self, start, end)
        sql = f"SELECT {_COLUMNS} FROM {self.table_name} {where} ORDER BY occurred_at, event_id"
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(cur, sql, params)
            return [_to_event(r) for r in self._fetch_dicts(cur)]

    def find_by_user(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeedEvent]:
        where, params = _range_clause(self, start, end, ["user_id = :user_id"])
        params["user_id"] = user_id
        sql = f"SELECT {_COLUMNS} FROM {self.table_name} {where} ORDER BY occurred_at, event_id"
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(cur, sql, params)
            return [_to_event(r) for r in self._fetch_dicts(cur)]


def _range_clause(
    repo: BaseRepository,
    start: datetime | None,
    end: datetime | None,
    clauses: list[str] | None = None,
) -> tuple[str, dict[str, Any]]:
    clauses = list(clauses or [])
    params: dict[str, Any] = {}
    if start is not None:
        clauses.append("occurred_at >= :start_at")
        params["start_at"] = repo._utc(start)
    if end is not None:
        clauses.append("occurred_at < :end_at")
        params["end_at"] = repo._utc(end)
    if not clauses:
        return "", params
    return "WHERE " + " AND ".join(clauses), params


def _to_event(row: dict[str, Any]) -> DeedEvent:
    return DeedEvent(
        event_id=row["event_id"],
        user_id=row["user_id"],
        deed_id=row.get("deed_id"),
        point_value=int(row["point_value"]),
        occurred_at=row["occurred_at"],
        recorded_at=row["recorded_at"],
        category=row.get("category"),
    )
