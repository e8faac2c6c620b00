"""Period totals repository: ``user_period_totals`` and its ledgers.

Tables:
  - ``user_period_totals``   one row per (user, period kind, period key)
  - ``period_contributions`` one row per (event, period kind, period key);
                             the primary key deduplicates increments
  - ``period_states``        finalized flag per period

An increment inserts the contribution row and MERGEs the total in the same
transaction. A recompute swap locks ``period_contributions`` in SHARE ROW
EXCLUSIVE mode, which lets readers through but holds back increments until
the swap commits.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

import oracledb

from deedboard.repositories.base import BaseRepository
from deedboard.services.clock import PeriodRef
from deedboard.services.totals import (
    Contribution,
    TotalsStore,
    UserPeriodTotal,
    fold_contributions,
)

logger = logging.getLogger(__name__)

_MERGE_ATTEMPTS = 2

_TOTAL_COLUMNS = (
    "user_id, period_kind, period_key, total_points, qualified_at, "
    "updated_at, event_count, finalized"
)

_INSERT_CONTRIBUTION = (
    "INSERT INTO period_contributions "
    "(event_id, period_kind, period_key, user_id, points, occurred_at) "
    "VALUES (:event_id, :period_kind, :period_key, :user_id, :points, :occurred_at)"
)

_MERGE_TOTAL = """
MERGE INTO user_period_totals t
USING (SELECT :user_id AS user_id, :period_kind AS period_kind,
              :period_key AS period_key FROM dual) s
ON (t.user_id = s.user_id AND t.period_kind = s.period_kind
    AND t.period_key = s.period_key)
WHEN MATCHED THEN UPDATE SET
    t.total_points = t.total_points + :points,
    t.qualified_at = CASE
        WHEN :points > 0 AND (t.qualified_at IS NULL OR :occurred_at > t.qualified_at)
        THEN :occurred_at ELSE t.qualified_at END,
    t.updated_at = :written_at,
    t.event_count = t.event_count + 1,
    t.finalized = 0
WHEN NOT MATCHED THEN INSERT
    (user_id, period_kind, period_key, total_points, qualified_at,
     updated_at, event_count, finalized)
VALUES
    (:user_id, :period_kind, :period_key, :points,
     CASE WHEN :points > 0 THEN :occurred_at END,
     :written_at, 1, 0)
"""


class _DuplicateContribution(Exception):
    """The event already contributed to this period."""


def _is_unique_violation(exc: oracledb.IntegrityError) -> bool:
    return "ORA-00001" in str(exc)


class PeriodTotalRepository(BaseRepository, TotalsStore):
    """Oracle-backed ``TotalsStore``."""

    def __init__(self, pool: Any) -> None:
        super().__init__(pool=pool, table_name="user_period_totals", id_column="user_id")

    # ── writes ──────────────────────────────────────────────────────

    def apply_contribution(
        self,
        ref: PeriodRef,
        contribution: Contribution,
        written_at: datetime,
    ) -> tuple[UserPeriodTotal, bool]:
        params = {
            "event_id": contribution.event_id,
            "period_kind": ref.kind,
            "period_key": ref.key,
            "user_id": contribution.user_id,
            "points": contribution.points,
            "occurred_at": self._utc(contribution.occurred_at),
        }
        merge_params = {k: v for k, v in params.items() if k != "event_id"}
        merge_params["written_at"] = self._utc(written_at)
        try:
            with self._transaction() as conn, conn.cursor() as cur:
                try:
                    self._execute(cur, _INSERT_CONTRIBUTION, params)
                except oracledb.IntegrityError as exc:
                    # The primary key is the only unique key on the ledger.
                    if not _is_unique_violation(exc):
                        raise
                    raise _DuplicateContribution from exc
                self._merge_total(cur, merge_params)
                total = self._select_total(cur, contribution.user_id, ref)
        except _DuplicateContribution:
            current = self.get_total(contribution.user_id, ref)
            return current or UserPeriodTotal(contribution.user_id, ref.kind, ref.key), False

        if total is None:
            total = UserPeriodTotal(contribution.user_id, ref.kind, ref.key)
        return total, True

    def _merge_total(self, cur: Any, params: dict[str, Any]) -> None:
        """MERGE one increment into the total row.

        Two first increments for the same total can both take the NOT MATCHED
        branch; the loser gets a unique violation on the total's primary key
        and its retry finds the row.
        """
        for attempt in range(1, _MERGE_ATTEMPTS + 1):
            try:
                self._execute(cur, _MERGE_TOTAL, params)
                return
            except oracledb.IntegrityError as exc:
                if attempt >= _MERGE_ATTEMPTS or not _is_unique_violation(exc):
                    raise
                logger.info(
                    "Concurrent insert of total %s/%s:%s; retrying merge",
                    params["user_id"],
                    params["period_kind"],
                    params["period_key"],
                )

    def replace_period(
        self,
        ref: PeriodRef,
        contributions: list[Contribution],
        written_at: datetime,
    ) -> list[UserPeriodTotal]:
        keys = {"period_kind": ref.kind, "period_key": ref.key}
        with self._transaction() as conn, conn.cursor() as cur:
            self._execute(cur, "LOCK TABLE period_contributions IN SHARE ROW EXCLUSIVE MODE")

            self._execute(
                cur,
                "SELECT event_id, user_id, points, occurred_at FROM period_contributions "
                "WHERE period_kind = :period_kind AND period_key = :period_key",
                keys,
            )
            existing = {
                r["event_id"]: Contribution(
                    r["event_id"], r["user_id"], int(r["points"]), r["occurred_at"]
                )
                for r in self._fetch_dicts(cur)
            }
            missing = [c for c in contributions if c.event_id not in existing]
            if missing:
                cur.executemany(
                    _INSERT_CONTRIBUTION,
                    [
                        {
                            "event_id": c.event_id,
                            "period_kind": ref.kind,
                            "period_key": ref.key,
                            "user_id": c.user_id,
                            "points": c.points,
                            "occurred_at": self._utc(c.occurred_at),
                        }
                        for c in missing
                    ],
                )

            merged = {c.event_id: c for c in contributions}
            for event_id, late in existing.items():
                merged.setdefault(event_id, late)
            finalized = self._period_finalized(cur, ref)
            totals = fold_contributions(ref, list(merged.values()), written_at)

            self._execute(
                cur,
                "DELETE FROM user_period_totals "
                "WHERE period_kind = :period_kind AND period_key = :period_key",
                keys,
            )
            if totals:
                cur.executemany(
                    f"INSERT INTO user_period_totals ({_TOTAL_COLUMNS}) "
                    "VALUES (:user_id, :period_kind, :period_key, :total_points, "
                    ":qualified_at, :updated_at, :event_count, :finalized)",
                    [
                        {
                            "user_id": t.user_id,
                            "period_kind": ref.kind,
                            "period_key": ref.key,
                            "total_points": t.total_points,
                            "qualified_at": self._utc(t.qualified_at),
                            "updated_at": self._utc(t.updated_at),
                            "event_count": t.event_count,
                            "finalized": 1 if finalized else 0,
                        }
                        for t in totals.values()
                    ],
                )

        if finalized:
            return [replace(t, finalized=True) for t in totals.values()]
        return list(totals.values())

    def finalize_total(self, user_id: str, ref: PeriodRef) -> bool:
        with self._transaction() as conn, conn.cursor() as cur:
            self._execute(
                cur,
                "UPDATE user_period_totals SET finalized = 1 "
                "WHERE user_id = :user_id AND period_kind = :period_kind "
                "AND period_key = :period_key",
                {"user_id": user_id, "period_kind": ref.kind, "period_key": ref.key},
            )
            return int(cur.rowcount) > 0

    def mark_period_finalized(self, ref: PeriodRef) -> None:
        self._set_period_state(ref, finalized=True)

    def reopen_period(self, ref: PeriodRef) -> None:
        self._set_period_state(ref, finalized=False)

    def _set_period_state(self, ref: PeriodRef, finalized: bool) -> None:
        sql = """
MERGE INTO period_states s
USING (SELECT :period_kind AS period_kind, :period_key AS period_key FROM dual) n
ON (s.period_kind = n.period_kind AND s.period_key = n.period_key)
WHEN MATCHED THEN UPDATE SET s.finalized = :finalized, s.changed_at = SYSTIMESTAMP
WHEN NOT MATCHED THEN INSERT (period_kind, period_key, finalized, changed_at)
VALUES (:period_kind, :period_key, :finalized, SYSTIMESTAMP)
"""
        with self._transaction() as conn, conn.cursor() as cur:
            self._execute(
                cur,
                sql,
                {
                    "period_kind": ref.kind,
                    "period_key": ref.key,
                    "finalized": 1 if finalized else 0,
                },
            )

    # ── reads ───────────────────────────────────────────────────────

    def _select_total(self, cur: Any, user_id: str, ref: PeriodRef) -> UserPeriodTotal | None:
        self._execute(
            cur,
            f"SELECT {_TOTAL_COLUMNS} FROM user_period_totals "
            "WHERE user_id = :user_id AND period_kind = :period_kind "
            "AND period_key = :period_key",
            {"user_id": user_id, "period_kind": ref.kind, "period_key": ref.key},
        )
        rows = self._fetch_dicts(cur)
        return _to_total(rows[0]) if rows else None

    def _period_finalized(self, cur: Any, ref: PeriodRef) -> bool:
        self._execute(
            cur,
            "SELECT finalized FROM period_states "
            "WHERE period_kind = :period_kind AND period_key = :period_key",
            {"period_kind": ref.kind, "period_key": ref.key},
        )
        row = cur.fetchone()
        return bool(row and row[0])

    def get_total(self, user_id: str, ref: PeriodRef) -> UserPeriodTotal | None:
        with self._connection() as conn, conn.cursor() as cur:
            return self._select_total(cur, user_id, ref)

    def scan_period(self, ref: PeriodRef) -> list[UserPeriodTotal]:
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(
                cur,
                f"SELECT {_TOTAL_COLUMNS} FROM user_period_totals "
                "WHERE period_kind = :period_kind AND period_key = :period_key",
                {"period_kind": ref.kind, "period_key": ref.key},
            )
            return [_to_total(r) for r in self._fetch_dicts(cur)]

    def is_period_finalized(self, ref: PeriodRef) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            return self._period_finalized(cur, ref)

    def open_periods(self, kind: str) -> list[PeriodRef]:
        sql = (
            "SELECT DISTINCT t.period_key FROM user_period_totals t "
            "WHERE t.period_kind = :period_kind AND NOT EXISTS ("
            "SELECT 1 FROM period_states s WHERE s.period_kind = t.period_kind "
            "AND s.period_key = t.period_key AND s.finalized = 1) "
            "ORDER BY t.period_key"
        )
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(cur, sql, {"period_kind": kind})
            return [PeriodRef(kind, row[0]) for row in cur.fetchall()]

    def totals_for_user(self, user_id: str) -> list[UserPeriodTotal]:
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(
                cur,
                f"SELECT {_TOTAL_COLUMNS} FROM user_period_totals "
                "WHERE user_id = :user_id ORDER BY period_kind, period_key",
                {"user_id": user_id},
            )
            return [_to_total(r) for r in self._fetch_dicts(cur)]


def _to_total(row: dict[str, Any]) -> UserPeriodTotal:
    return UserPeriodTotal(
        user_id=row["user_id"],
        period_kind=row["period_kind"],
        period_key=row["period_key"],
        total_points=int(row["total_points"]),
        qualified_at=row.get("qualified_at"),
        updated_at=row.get("updated_at"),
        event_count=int(row.get("event_count") or 0),
        finalized=bool(row.get("finalized")),
    )
