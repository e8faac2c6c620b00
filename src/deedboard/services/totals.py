"""Per-user period totals: the only mutable shared state of the engine.

A total is keyed by ``(user_id, PeriodRef)``. Writers go through
``apply_contribution``, an atomic increment-or-create that is deduplicated
per ``(event_id, period)``; nobody reads a row, adds to it and writes it
back outside the store.

Each applied event leaves a ``Contribution`` behind for its period. A
recompute swap uses them to merge writes that raced with the recompute, so
the swapped totals always equal the sum over every contribution.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, NamedTuple

from deedboard.services.clock import PeriodRef


class Contribution(NamedTuple):
    """One event's share of one period total."""

    event_id: str
    user_id: str
    points: int
    occurred_at: datetime


@dataclass(frozen=True)
class UserPeriodTotal:
    """Aggregated points of one user in one period.

    ``qualified_at`` is when the user reached ``total_points``: the latest
    ``occurred_at`` among events that added points. It depends only on the
    set of events, not on arrival order, and is what rankings break ties on.
    ``updated_at`` is the wall-clock time of the last write.
    """

    user_id: str
    period_kind: str
    period_key: str
    total_points: int = 0
    qualified_at: datetime | None = None
    updated_at: datetime | None = None
    event_count: int = 0
    finalized: bool = False

    @property
    def ref(self) -> PeriodRef:
        return PeriodRef(self.period_kind, self.period_key)

    def plus(self, contribution: Contribution, written_at: datetime) -> UserPeriodTotal:
        qualified_at = self.qualified_at
        if contribution.points > 0 and (
            qualified_at is None or contribution.occurred_at > qualified_at
        ):
            qualified_at = contribution.occurred_at
        return replace(
            self,
            total_points=self.total_points + contribution.points,
            qualified_at=qualified_at,
            updated_at=written_at,
            event_count=self.event_count + 1,
            finalized=False,
        )

    def same_aggregate(self, other: UserPeriodTotal) -> bool:
        """Equal as aggregates, ignoring write time and finalization."""
        return (
            self.user_id == other.user_id
            and self.ref == other.ref
            and self.total_points == other.total_points
            and self.qualified_at == other.qualified_at
            and self.event_count == other.event_count
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "period_kind": self.period_kind,
            "period_key": self.period_key,
            "total_points": self.total_points,
            "qualified_at": self.qualified_at.isoformat() if self.qualified_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "event_count": self.event_count,
            "finalized": self.finalized,
        }


def fold_contributions(
    ref: PeriodRef,
    contributions: list[Contribution],
    written_at: datetime,
) -> dict[str, UserPeriodTotal]:
    """Build per-user totals for *ref* from scratch."""
    totals: dict[str, UserPeriodTotal] = {}
    for c in contributions:
        current = totals.get(c.user_id) or UserPeriodTotal(c.user_id, ref.kind, ref.key)
        totals[c.user_id] = current.plus(c, written_at)
    return totals


class TotalsStore(ABC):
    """Key-value store of period totals with an atomic increment contract."""

    @abstractmethod
    def apply_contribution(
        self,
        ref: PeriodRef,
        contribution: Contribution,
        written_at: datetime,
    ) -> tuple[UserPeriodTotal, bool]:
        """Atomically add *contribution* to the user's total for *ref*.

        Returns the resulting total and whether it was applied (False when
        this event was already counted for this period).
        """

    @abstractmethod
    def get_total(self, user_id: str, ref: PeriodRef) -> UserPeriodTotal | None:
        """Current total of one user, or ``None`` without activity."""

    @abstractmethod
    def scan_period(self, ref: PeriodRef) -> list[UserPeriodTotal]:
        """Snapshot of every user's total for *ref*."""

    @abstractmethod
    def replace_period(
        self,
        ref: PeriodRef,
        contributions: list[Contribution],
        written_at: datetime,
    ) -> list[UserPeriodTotal]:
        """Atomically rebuild *ref* from *contributions*.

        Contributions already present in the store but missing from the
        argument (writes that raced the caller) are kept.
        """

    @abstractmethod
    def finalize_total(self, user_id: str, ref: PeriodRef) -> bool:
        """Mark one user's total immutable. Returns False if it does not exist."""

    @abstractmethod
    def mark_period_finalized(self, ref: PeriodRef) -> None:
        """Record that every total of *ref* is finalized."""

    @abstractmethod
    def is_period_finalized(self, ref: PeriodRef) -> bool:
        """Whether *ref* is currently finalized."""

    @abstractmethod
    def reopen_period(self, ref: PeriodRef) -> None:
        """Clear the finalized mark of *ref* after a late write."""

    @abstractmethod
    def open_periods(self, kind: str) -> list[PeriodRef]:
        """Known periods of *kind* that are not finalized."""

    @abstractmethod
    def totals_for_user(self, user_id: str) -> list[UserPeriodTotal]:
        """All of a user's totals."""


class _PeriodGate:
    """Shared/exclusive gate for one period.

    Increments enter shared, so different users never wait on each other;
    a recompute swap enters exclusive for the duration of the swap only.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._sharers = 0
        self._exclusive = False
        self._waiting_exclusive = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive or self._waiting_exclusive:
                self._cond.wait()
            self._sharers += 1
        try:
            yield
        finally:
            with self._cond:
                self._sharers -= 1
                if self._sharers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._waiting_exclusive += 1
            while self._exclusive or self._sharers:
                self._cond.wait()
            self._waiting_exclusive -= 1
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class InMemoryTotalsStore(TotalsStore):
    """Thread-safe in-process totals store.

    Rows are immutable ``UserPeriodTotal`` values replaced under a
    per-(user, period) lock, so readers can copy them without locking.
    """

    def __init__(self) -> None:
        self._rows: dict[PeriodRef, dict[str, UserPeriodTotal]] = {}
        self._contributions: dict[PeriodRef, dict[str, Contribution]] = {}
        self._finalized: set[PeriodRef] = set()
        self._row_locks: dict[tuple[str, PeriodRef], threading.Lock] = {}
        self._gates: dict[PeriodRef, _PeriodGate] = {}
        self._registry_lock = threading.Lock()

    # ── registry ────────────────────────────────────────────────────

    def _gate(self, ref: PeriodRef) -> _PeriodGate:
        gate = self._gates.get(ref)
        if gate is None:
            with self._registry_lock:
                gate = self._gates.get(ref)
                if gate is None:
                    gate = self._gates[ref] = _PeriodGate()
                    self._rows[ref] = {}
                    self._contributions[ref] = {}
        return gate

    def _row_lock(self, user_id: str, ref: PeriodRef) -> threading.Lock:
        key = (user_id, ref)
        lock = self._row_locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._row_locks.setdefault(key, threading.Lock())
        return lock

    # ── writes ──────────────────────────────────────────────────────

    def apply_contribution(
        self,
        ref: PeriodRef,
        contribution: Contribution,
        written_at: datetime,
    ) -> tuple[UserPeriodTotal, bool]:
        gate = self._gate(ref)
        with gate.shared(), self._row_lock(contribution.user_id, ref):
            rows = self._rows[ref]
            contributions = self._contributions[ref]
            current = rows.get(contribution.user_id) or UserPeriodTotal(
                contribution.user_id, ref.kind, ref.key
            )
            if contribution.event_id in contributions:
                return current, False

            updated = current.plus(contribution, written_at)
            contributions[contribution.event_id] = contribution
            rows[contribution.user_id] = updated
            return updated, True

    def replace_period(
        self,
        ref: PeriodRef,
        contributions: list[Contribution],
        written_at: datetime,
    ) -> list[UserPeriodTotal]:
        gate = self._gate(ref)
        with gate.exclusive():
            merged = {c.event_id: c for c in contributions}
            for event_id, late in self._contributions[ref].items():
                merged.setdefault(event_id, late)

            finalized = ref in self._finalized
            totals = fold_contributions(ref, list(merged.values()), written_at)
            if finalized:
                totals = {uid: replace(t, finalized=True) for uid, t in totals.items()}

            self._contributions[ref] = merged
            self._rows[ref] = totals
            return list(totals.values())

    def finalize_total(self, user_id: str, ref: PeriodRef) -> bool:
        gate = self._gate(ref)
        with gate.shared(), self._row_lock(user_id, ref):
            rows = self._rows[ref]
            current = rows.get(user_id)
            if current is None:
                return False
            if not current.finalized:
                rows[user_id] = replace(current, finalized=True)
            return True

    def mark_period_finalized(self, ref: PeriodRef) -> None:
        self._gate(ref)
        with self._registry_lock:
            self._finalized.add(ref)

    def reopen_period(self, ref: PeriodRef) -> None:
        with self._registry_lock:
            self._finalized.discard(ref)

    # ── reads ───────────────────────────────────────────────────────

    def get_total(self, user_id: str, ref: PeriodRef) -> UserPeriodTotal | None:
        rows = self._rows.get(ref)
        return rows.get(user_id) if rows is not None else None

    def scan_period(self, ref: PeriodRef) -> list[UserPeriodTotal]:
        rows = self._rows.get(ref)
        return list(rows.values()) if rows is not None else []

    def is_period_finalized(self, ref: PeriodRef) -> bool:
        return ref in self._finalized

    def open_periods(self, kind: str) -> list[PeriodRef]:
        with self._registry_lock:
            refs = list(self._gates)
            finalized = set(self._finalized)
        return sorted(r for r in refs if r.kind == kind and r not in finalized)

    def totals_for_user(self, user_id: str) -> list[UserPeriodTotal]:
        with self._registry_lock:
            refs = list(self._rows)
        found = []
        for ref in refs:
            total = self.get_total(user_id, ref)
            if total is not None:
                found.append(total)
        return found
