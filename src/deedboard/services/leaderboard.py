"""Leaderboard ranker: deterministic ranking of period totals.

Rankings are based on points earned within a period.
Tie-breaking order:
  1. Earlier achievement of the point total (``qualified_at``)
  2. User ID (deterministic fallback)

The comparator is a plain Python sort key, so the order never depends on a
query engine's evaluation of ``ORDER BY``. The cohort filter is applied
before ranking: rank numbers are positions within the cohort.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from deedboard.core.constants import (
    LEADERBOARD_CONTEXT_WINDOW,
    LEADERBOARD_DEFAULT_LIMIT,
    LEADERBOARD_FALLBACK_SNAPSHOTS,
    PERIOD_ALIASES,
    PERIOD_KINDS,
)
from deedboard.core.errors import LeaderboardError, StoreUnavailable
from deedboard.services.clock import DayBoundaryResolver, PeriodRef, ensure_utc
from deedboard.services.cohorts import GLOBAL, CohortFilter
from deedboard.services.totals import TotalsStore, UserPeriodTotal

logger = logging.getLogger(__name__)

_NEVER = datetime.max.replace(tzinfo=UTC)


@dataclass(frozen=True)
class LeaderboardEntry:
    """One ranked row; derived on read, never stored as source of truth."""

    rank: int
    user_id: str
    total_points: int
    cohort: str
    qualified_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "user_id": self.user_id,
            "total_points": self.total_points,
            "cohort": self.cohort,
            "qualified_at": self.qualified_at.isoformat() if self.qualified_at else None,
        }


def normalize_period(period: str) -> str:
    """Map ``daily``/``weekly``/``overall``... onto a period kind."""
    kind = PERIOD_ALIASES.get(period.strip().lower()) if period else None
    if kind is None or kind not in PERIOD_KINDS:
        raise LeaderboardError(f"Invalid period: {period}")
    return kind


# ── Ranking engine (pure function) ─────────────────────────────────


def ranking_key(entry: dict[str, Any]) -> tuple[int, datetime, str]:
    """Sort key: points desc, qualified_at asc (missing last), user_id asc."""
    points = -(entry.get("total_points", 0) or 0)

    qa = entry.get("qualified_at")
    if qa is None:
        qa_val = _NEVER
    elif isinstance(qa, str):
        try:
            qa_val = ensure_utc(datetime.fromisoformat(qa))
        except ValueError:
            qa_val = _NEVER
    else:
        qa_val = ensure_utc(qa)

    return (points, qa_val, str(entry.get("user_id", "")))


def compute_rankings(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sort users by points and apply tie-breaking rules.

    Each entry must contain ``user_id`` and ``total_points``;
    ``qualified_at`` (datetime, ISO string or None) is optional.

    Returns copies with ``rank`` added, sorted 1..N. User ids are unique
    within a period, so the order is strict and total.
    """
    ranked: list[dict[str, Any]] = []
    for i, entry in enumerate(sorted(entries, key=ranking_key), start=1):
        ranked_entry = dict(entry)
        ranked_entry["rank"] = i
        ranked.append(ranked_entry)
    return ranked


def extract_user_context(
    rankings: list[dict[str, Any]],
    user_id: str,
    window: int = LEADERBOARD_CONTEXT_WINDOW,
) -> dict[str, Any]:
    """Extract a user's rank and the ±window entries around it."""
    total = len(rankings)
    for i, entry in enumerate(rankings):
        if entry.get("user_id") == user_id:
            start = max(0, i - window)
            end = min(total, i + window + 1)
            return {
                "user_rank": entry["rank"],
                "user_entry": entry,
                "total_participants": total,
                "context": rankings[start:end],
            }
    return {
        "user_rank": None,
        "user_entry": None,
        "total_participants": total,
        "context": [],
    }


# ── Ranker ──────────────────────────────────────────────────────────


class LeaderboardRanker:
    """Ranks period totals within a cohort, with optional snapshot caching."""

    def __init__(
        self,
        resolver: DayBoundaryResolver,
        totals_store: TotalsStore,
        cohort_resolver: Any | None = None,
        cache_service: Any | None = None,
        cache_ttl: int = 900,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.resolver = resolver
        self.totals_store = totals_store
        self.cohort_resolver = cohort_resolver
        self.cache = cache_service
        self.cache_ttl = cache_ttl
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        # Last snapshot served per cache key, least recently served first;
        # used when the store is down.
        self._last_good: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def rank(
        self,
        kind: str,
        key: str,
        cohort_filter: CohortFilter | None = None,
    ) -> list[LeaderboardEntry]:
        """Strict total order of the cohort's totals for one period."""
        cohort = cohort_filter or GLOBAL
        self.resolver.first_day(kind, key)
        totals = self.totals_store.scan_period(PeriodRef(kind, key))
        return self._rank_totals(totals, cohort)

    def _rank_totals(
        self,
        totals: list[UserPeriodTotal],
        cohort: CohortFilter,
    ) -> list[LeaderboardEntry]:
        candidates = self._filter_cohort(totals, cohort)
        ranked = compute_rankings(
            [
                {
                    "user_id": t.user_id,
                    "total_points": t.total_points,
                    "qualified_at": t.qualified_at,
                }
                for t in candidates
            ]
        )
        return [
            LeaderboardEntry(
                rank=r["rank"],
                user_id=r["user_id"],
                total_points=r["total_points"],
                cohort=cohort.label,
                qualified_at=r["qualified_at"],
            )
            for r in ranked
        ]

    def _filter_cohort(
        self,
        totals: list[UserPeriodTotal],
        cohort: CohortFilter,
    ) -> list[UserPeriodTotal]:
        if cohort.is_global:
            return totals
        if self.cohort_resolver is None:
            raise LeaderboardError("Cohort lookup is not configured", status_code=501)
        members = self.cohort_resolver.members(cohort.scope_type, str(cohort.scope_id))
        return [t for t in totals if t.user_id in members]

    # ── Read API ────────────────────────────────────────────────────

    def resolve_ref(
        self,
        period: str,
        period_key: str | None = None,
        now: datetime | None = None,
    ) -> PeriodRef:
        """Period named by *period*/*period_key*; defaults to the current one."""
        kind = normalize_period(period)
        if period_key is None:
            return self.resolver.period_ref(kind, now or self._clock())
        self.resolver.first_day(kind, period_key)
        return PeriodRef(kind, period_key)

    def snapshot(
        self,
        ref: PeriodRef,
        cohort: CohortFilter | None = None,
    ) -> dict[str, Any]:
        """Ranked snapshot of *ref*, from cache when possible.

        When the store is unavailable the last snapshot served for the same
        query is returned with ``stale`` set; rankings do not fail on stale
        data.
        """
        cohort = cohort or GLOBAL
        cache_key = _cache_key(ref, cohort)

        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            totals = self.totals_store.scan_period(ref)
            finalized = self.totals_store.is_period_finalized(ref)
        except StoreUnavailable:
            last = self._last_good.get(cache_key)
            if last is None:
                raise
            logger.warning("Store unavailable; serving last snapshot for %s", cache_key)
            return {**last, "stale": True}

        entries = self._rank_totals(totals, cohort)
        written = [t.updated_at for t in totals if t.updated_at is not None]
        snap = {
            "period": ref.kind,
            "period_key": ref.key,
            "cohort": cohort.label,
            "finalized": finalized,
            "as_of": max(written).isoformat() if written else None,
            "stale": False,
            "entries": [e.to_dict() for e in entries],
        }
        self._remember(cache_key, snap)
        if self.cache is not None:
            self.cache.set(cache_key, snap, ttl=self.cache_ttl)
        return snap

    def _remember(self, cache_key: str, snap: dict[str, Any]) -> None:
        self._last_good[cache_key] = snap
        self._last_good.move_to_end(cache_key)
        while len(self._last_good) > LEADERBOARD_FALLBACK_SNAPSHOTS:
            self._last_good.popitem(last=False)

    def get_leaderboard(
        self,
        period: str,
        period_key: str | None = None,
        cohort: CohortFilter | None = None,
        page: int = 1,
        limit: int = LEADERBOARD_DEFAULT_LIMIT,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Paginated leaderboard for a period and cohort."""
        if page < 1 or limit < 1:
            raise LeaderboardError("page and limit must be positive")
        ref = self.resolve_ref(period, period_key, now)
        snap = self.snapshot(ref, cohort)

        entries = snap["entries"]
        total = len(entries)
        offset = (page - 1) * limit
        return {
            "period": snap["period"],
            "period_key": snap["period_key"],
            "cohort": snap["cohort"],
            "finalized": snap["finalized"],
            "as_of": snap["as_of"],
            "stale": snap.get("stale", False),
            "items": entries[offset : offset + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total_items": total,
                "total_pages": max(1, (total + limit - 1) // limit),
            },
        }

    def get_user_rank(
        self,
        user_id: str,
        period: str,
        period_key: str | None = None,
        cohort: CohortFilter | None = None,
        window: int = LEADERBOARD_CONTEXT_WINDOW,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """A user's rank and surrounding entries within the cohort."""
        ref = self.resolve_ref(period, period_key, now)
        snap = self.snapshot(ref, cohort)
        context = extract_user_context(snap["entries"], user_id, window)
        context.update(
            {
                "period": snap["period"],
                "period_key": snap["period_key"],
                "cohort": snap["cohort"],
                "as_of": snap["as_of"],
            }
        )
        return context

    def get_user_totals(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        """The user's current day/week/month/all-time totals."""
        now = now or self._clock()
        stored = {t.ref: t for t in self.totals_store.totals_for_user(user_id)}
        periods: dict[str, Any] = {}
        for ref in self.resolver.refs_for(now):
            total = stored.get(ref)
            periods[ref.kind] = {
                "period_key": ref.key,
                "total_points": total.total_points if total else 0,
                "event_count": total.event_count if total else 0,
                "qualified_at": (
                    total.qualified_at.isoformat() if total and total.qualified_at else None
                ),
            }
        return {
            "user_id": user_id,
            "day_key": str(self.resolver.day_key(now)),
            "periods": periods,
        }

    def invalidate(self, refs: list[PeriodRef] | None = None) -> int:
        """Drop cached snapshots for *refs* (all leaderboards when ``None``)."""
        if self.cache is None:
            return 0
        if refs is None:
            return int(self.cache.delete_pattern("leaderboard:*"))
        return sum(
            int(self.cache.delete_pattern(f"leaderboard:{ref.kind}:{ref.key}:*")) for ref in refs
        )


def _cache_key(ref: PeriodRef, cohort: CohortFilter) -> str:
    return f"leaderboard:{ref.kind}:{ref.key}:{cohort.label}"
