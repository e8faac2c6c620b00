"""Aggregator: turns deed events into per-user period totals.

Two paths lead to the same totals:

* ``apply_event``: incremental. The event is appended to the log and its
  points are added to the user's day, week, month and all-time totals.
  Each period write is deduplicated by event id, so replaying an event
  (or retrying a half-applied one) never double-counts.
* ``recompute``: full rebuild of one period from the event log. The new
  totals are built off to the side and swapped in atomically; a cancelled
  or failed recompute publishes nothing.

Because a total is a sum of contributions plus the latest positive
``occurred_at``, both paths converge on identical results regardless of
event arrival order.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from deedboard.core.errors import (
    ClockSkew,
    InvalidEvent,
    RecomputeInterrupted,
    StoreUnavailable,
)
from deedboard.services.clock import DayBoundaryResolver, PeriodRef
from deedboard.services.events import DeedEvent, EventStore, validate_event
from deedboard.services.totals import Contribution, TotalsStore, UserPeriodTotal

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ApplyResult:
    """Outcome of applying one event."""

    def __init__(self, event: DeedEvent) -> None:
        self.event_id = event.event_id
        self.user_id = event.user_id
        self.appended: bool = False
        self.totals: dict[str, UserPeriodTotal] = {}
        self.applied: list[PeriodRef] = []
        self.skew: list[ClockSkew] = []

    @property
    def duplicate(self) -> bool:
        """True when the event had already been fully aggregated."""
        return not self.appended and not self.applied

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "duplicate": self.duplicate,
            "totals": {kind: t.to_dict() for kind, t in self.totals.items()},
            "applied_periods": [str(ref) for ref in self.applied],
            "clock_skew": [flag.to_dict() for flag in self.skew],
        }


class Aggregator:
    """Reduces deed events into ``UserPeriodTotal`` rows.

    Receives its collaborators via __init__, no global state.
    """

    def __init__(
        self,
        resolver: DayBoundaryResolver,
        event_store: EventStore,
        totals_store: TotalsStore,
        user_lookup: Any | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
        max_future_skew: timedelta | None = timedelta(minutes=5),
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.resolver = resolver
        self.event_store = event_store
        self.totals_store = totals_store
        self.user_lookup = user_lookup
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_future_skew = max_future_skew
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep

    # ── Incremental path ────────────────────────────────────────────

    def apply_event(self, event: DeedEvent) -> ApplyResult:
        """Append *event* to the log and add it to every period it falls in.

        Raises ``InvalidEvent`` (nothing is stored) or ``StoreUnavailable``
        after retries (safe to call again with the same event).
        """
        validate_event(event, self.max_future_skew)
        if self.user_lookup is not None:
            known = self._with_retry("user lookup", self.user_lookup.exists, event.user_id)
            if not known:
                raise InvalidEvent(f"Event {event.event_id}: unknown user {event.user_id}")

        result = ApplyResult(event)
        result.appended = self._with_retry("append", self.event_store.append, event)

        contribution = Contribution(
            event_id=event.event_id,
            user_id=event.user_id,
            points=event.point_value,
            occurred_at=event.occurred_at,
        )
        for ref in self.resolver.refs_for(event.occurred_at):
            was_final = self._was_finalized(event.user_id, ref)
            total, applied = self._with_retry(
                "increment",
                self.totals_store.apply_contribution,
                ref,
                contribution,
                self._clock(),
            )
            result.totals[ref.kind] = total
            if not applied:
                continue
            result.applied.append(ref)
            # A tick may have finalized the period while the increment ran.
            if was_final or self._with_retry(
                "finalized check", self.totals_store.is_period_finalized, ref
            ):
                self._with_retry("reopen", self.totals_store.reopen_period, ref)
                flag = ClockSkew(event.event_id, event.user_id, ref.kind, ref.key)
                result.skew.append(flag)
                logger.warning(
                    "Late event %s for user %s reopened finalized period %s",
                    event.event_id,
                    event.user_id,
                    ref,
                )

        if result.duplicate:
            logger.debug("Event %s already aggregated", event.event_id)
        else:
            logger.info(
                "Applied event %s: user=%s points=%d day=%s",
                event.event_id,
                event.user_id,
                event.point_value,
                self.resolver.day_key(event.occurred_at),
            )
        return result

    def _was_finalized(self, user_id: str, ref: PeriodRef) -> bool:
        if self._with_retry("finalized check", self.totals_store.is_period_finalized, ref):
            return True
        current = self._with_retry("read", self.totals_store.get_total, user_id, ref)
        return current is not None and current.finalized

    # ── Rebuild path ────────────────────────────────────────────────

    def recompute(
        self,
        kind: str,
        key: str,
        cancel: Any | None = None,
    ) -> list[UserPeriodTotal]:
        """Rebuild every user's total for one period from the event log.

        *cancel* is anything with ``is_set()`` (e.g. ``threading.Event``);
        it is checked between users. On cancellation or any failure the
        shadow totals are dropped and ``RecomputeInterrupted`` is raised.
        """
        ref = PeriodRef(kind, key)
        start, end = self.resolver.period_bounds(kind, key)
        logger.info("Recompute of %s started", ref)

        try:
            events = self._with_retry("scan", self.event_store.scan, start, end)

            per_user: dict[str, list[Contribution]] = defaultdict(list)
            for event in events:
                per_user[event.user_id].append(
                    Contribution(event.event_id, event.user_id, event.point_value, event.occurred_at)
                )

            shadow: list[Contribution] = []
            users = sorted(per_user)
            for done, user_id in enumerate(users):
                if cancel is not None and cancel.is_set():
                    raise RecomputeInterrupted(
                        f"Recompute of {ref} cancelled after {done} of {len(users)} users",
                        cancelled=True,
                    )
                shadow.extend(per_user[user_id])

            if cancel is not None and cancel.is_set():
                raise RecomputeInterrupted(
                    f"Recompute of {ref} cancelled before swap", cancelled=True
                )

            totals = self._with_retry(
                "swap", self.totals_store.replace_period, ref, shadow, self._clock()
            )
        except RecomputeInterrupted:
            logger.warning("Recompute of %s interrupted; shadow totals discarded", ref)
            raise
        except Exception as exc:
            logger.error("Recompute of %s failed", ref, exc_info=True)
            raise RecomputeInterrupted(f"Recompute of {ref} failed: {exc}") from exc

        logger.info(
            "Recompute of %s complete: %d events, %d users",
            ref,
            len(events),
            len(totals),
        )
        return totals

    def rebuild(self, cancel: Any | None = None) -> list[PeriodRef]:
        """Recompute every period that has at least one event in the log."""
        events = self._with_retry("scan", self.event_store.scan, None, None)
        refs: set[PeriodRef] = set()
        for event in events:
            refs.update(self.resolver.refs_for(event.occurred_at))

        ordered = sorted(refs)
        for ref in ordered:
            self.recompute(ref.kind, ref.key, cancel=cancel)
        return ordered

    # ── Store boundary ──────────────────────────────────────────────

    def _with_retry(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Call *fn*, retrying ``StoreUnavailable`` with exponential backoff."""
        delay = self.retry_backoff_seconds
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn(*args)
            except StoreUnavailable as exc:
                if attempt >= self.retry_attempts:
                    logger.error(
                        "Store unavailable during %s after %d attempts: %s",
                        operation,
                        attempt,
                        exc.detail,
                    )
                    raise
                logger.warning(
                    "Store unavailable during %s (attempt %d/%d), retrying in %.2fs",
                    operation,
                    attempt,
                    self.retry_attempts,
                    delay,
                )
                self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")
