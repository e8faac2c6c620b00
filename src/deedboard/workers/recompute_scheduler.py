"""Recompute scheduler: event-driven aggregation and period finalization.

``on_event`` aggregates each incoming deed event; ``on_tick`` runs on a
timer and at each reference-timezone day boundary to retry events that hit
a store outage and to finalize periods that have ended.

Every step is restart-safe: finalizing an already-finalized total is a
no-op, and a crash between users leaves the period open so the next tick
finishes it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from deedboard.core.constants import ROLLING_PERIOD_KINDS
from deedboard.core.context import new_correlation_id
from deedboard.core.errors import InvalidEvent, RecomputeInterrupted, StoreUnavailable
from deedboard.services.aggregator import Aggregator, ApplyResult
from deedboard.services.clock import PeriodRef
from deedboard.services.events import DeedEvent
from deedboard.services.pending import InMemoryPendingQueue, PendingQueue
from deedboard.services.totals import UserPeriodTotal

logger = logging.getLogger(__name__)

STATUS_APPLIED = "applied"
STATUS_DUPLICATE = "duplicate"
STATUS_PENDING = "pending"


class EventOutcome:
    """What happened to one event handed to ``on_event``."""

    def __init__(self, event: DeedEvent, result: ApplyResult | None = None) -> None:
        self.event_id = event.event_id
        self.result = result
        self.error: str | None = None
        if result is None:
            self.status = STATUS_PENDING
        elif result.duplicate:
            self.status = STATUS_DUPLICATE
        else:
            self.status = STATUS_APPLIED

    @property
    def pending(self) -> bool:
        return self.status == STATUS_PENDING

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event_id": self.event_id,
            "status": self.status,
            "error": self.error,
        }
        if self.result is not None:
            data.update(self.result.to_dict())
        return data


class TickResult:
    """Result of a single tick."""

    def __init__(self, tick_at: datetime) -> None:
        self.tick_at = tick_at
        self.current_keys: dict[str, str] = {}
        self.retried_events: int = 0
        self.pending_events: int = 0
        self.periods_finalized: list[str] = []
        self.users_finalized: int = 0
        self.errors: list[str] = []

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_at": self.tick_at.isoformat(),
            "current_keys": self.current_keys,
            "retried_events": self.retried_events,
            "pending_events": self.pending_events,
            "periods_finalized": self.periods_finalized,
            "users_finalized": self.users_finalized,
            "errors": self.errors,
            "success": self.success,
        }


class RecomputeScheduler:
    """Drives the aggregator from events and from the clock.

    Usage::

        scheduler = RecomputeScheduler(aggregator, ranker)
        scheduler.on_event(event)
        result = scheduler.on_tick()
    """

    def __init__(
        self,
        aggregator: Aggregator,
        ranker: Any | None = None,
        recompute_max_attempts: int = 3,
        tick_interval_seconds: float = 300,
        clock: Callable[[], datetime] | None = None,
        pending: PendingQueue | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.resolver = aggregator.resolver
        self.totals_store = aggregator.totals_store
        self.ranker = ranker
        self.recompute_max_attempts = max(1, recompute_max_attempts)
        self.tick_interval_seconds = tick_interval_seconds
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.pending = pending if pending is not None else InMemoryPendingQueue()
        self._tick_lock = threading.Lock()
        self.last_tick_keys: dict[str, str] = {}

    @property
    def pending_count(self) -> int:
        return self.pending.count()

    # ── Events ──────────────────────────────────────────────────────

    def on_event(self, event: DeedEvent) -> EventOutcome:
        """Aggregate *event*; queue it when the store is unavailable.

        ``InvalidEvent`` propagates to the caller, as does ``StoreUnavailable``
        when the pending queue cannot take the event either.
        """
        try:
            result = self.aggregator.apply_event(event)
        except StoreUnavailable as exc:
            self.pending.put(event)
            logger.warning("Event %s queued for retry: %s", event.event_id, exc.detail)
            outcome = EventOutcome(event)
            outcome.error = exc.detail
            return outcome

        self._invalidate(result.applied)
        return EventOutcome(event, result)

    def _retry_pending(self, result: TickResult) -> None:
        try:
            queued = self.pending.events()
        except StoreUnavailable as exc:
            result.errors.append(f"Reading pending events failed: {exc.detail}")
            return

        for event in queued:
            result.retried_events += 1
            try:
                applied = self.aggregator.apply_event(event)
            except StoreUnavailable as exc:
                result.errors.append(f"Event {event.event_id} still pending: {exc.detail}")
                continue
            except InvalidEvent as exc:
                logger.error("Dropping pending event %s: %s", event.event_id, exc.detail)
                result.errors.append(f"Event {event.event_id} rejected: {exc.detail}")
            except Exception as exc:
                logger.error("Retry of event %s failed", event.event_id, exc_info=True)
                result.errors.append(f"Event {event.event_id} failed: {exc}")
                continue
            else:
                self._invalidate(applied.applied)

            try:
                self.pending.remove(event.event_id)
            except StoreUnavailable as exc:
                result.errors.append(f"Event {event.event_id} left queued: {exc.detail}")

        try:
            result.pending_events = self.pending_count
        except StoreUnavailable as exc:
            result.errors.append(f"Counting pending events failed: {exc.detail}")

    # ── Ticks ───────────────────────────────────────────────────────

    def on_tick(self, now: datetime | None = None) -> TickResult:
        """Retry pending events and finalize every period that has ended."""
        now = now or self._clock()
        result = TickResult(now)

        with self._tick_lock:
            self._retry_pending(result)

            for kind in ROLLING_PERIOD_KINDS:
                try:
                    candidates = set(self.totals_store.open_periods(kind))
                    previous = self.resolver.previous_ref(kind, now)
                    if previous is not None:
                        candidates.add(previous)
                except Exception as exc:
                    msg = f"Listing open {kind} periods failed: {exc}"
                    logger.error(msg, exc_info=True)
                    result.errors.append(msg)
                    continue

                for ref in sorted(candidates):
                    if self.resolver.has_ended(ref, now):
                        self._finalize_period(ref, result)

            result.current_keys = {
                kind: self.resolver.period_key(kind, now) for kind in ROLLING_PERIOD_KINDS
            }
            self.last_tick_keys = dict(result.current_keys)

        logger.info(
            "Tick complete: %d periods finalized, %d users, %d pending, %d errors",
            len(result.periods_finalized),
            result.users_finalized,
            result.pending_events,
            len(result.errors),
        )
        return result

    def _finalize_period(self, ref: PeriodRef, result: TickResult) -> None:
        try:
            if self.totals_store.is_period_finalized(ref):
                return
            totals = self.totals_store.scan_period(ref)
        except Exception as exc:
            msg = f"Reading {ref} failed: {exc}"
            logger.error(msg, exc_info=True)
            result.errors.append(msg)
            return

        if self._finalize_users(ref, totals, result):
            return

        try:
            self.totals_store.mark_period_finalized(ref)
            # Rows written while the period was being marked.
            stragglers = [t for t in self.totals_store.scan_period(ref) if not t.finalized]
        except Exception as exc:
            msg = f"Marking {ref} finalized failed: {exc}"
            logger.error(msg, exc_info=True)
            result.errors.append(msg)
            return

        if self._finalize_users(ref, stragglers, result):
            try:
                self.totals_store.reopen_period(ref)
            except Exception as exc:
                msg = f"Reopening {ref} failed: {exc}"
                logger.error(msg, exc_info=True)
                result.errors.append(msg)
            return

        result.periods_finalized.append(str(ref))
        self._invalidate([ref])
        logger.info("Finalized %s (%d users)", ref, len(totals))

    def _finalize_users(
        self,
        ref: PeriodRef,
        totals: list[UserPeriodTotal],
        result: TickResult,
    ) -> int:
        """Finalize each user's total in isolation; returns the failure count."""
        failures = 0
        for total in totals:
            if total.finalized:
                continue
            try:
                if self.totals_store.finalize_total(total.user_id, ref):
                    result.users_finalized += 1
            except Exception as exc:
                failures += 1
                msg = f"Finalizing {ref} for user {total.user_id} failed: {exc}"
                logger.error(msg, exc_info=True)
                result.errors.append(msg)
        return failures

    # ── Repair ──────────────────────────────────────────────────────

    def repair(
        self,
        kind: str,
        key: str,
        cancel: Any | None = None,
    ) -> list[UserPeriodTotal]:
        """Recompute one period, retrying crashed attempts.

        Cancellation is not retried.
        """
        ref = PeriodRef(kind, key)
        for attempt in range(1, self.recompute_max_attempts + 1):
            try:
                totals = self.aggregator.recompute(kind, key, cancel=cancel)
            except RecomputeInterrupted as exc:
                if exc.cancelled or attempt >= self.recompute_max_attempts:
                    raise
                logger.warning(
                    "Recompute of %s crashed (attempt %d/%d): %s",
                    ref,
                    attempt,
                    self.recompute_max_attempts,
                    exc.detail,
                )
                continue
            self._invalidate([ref])
            return totals
        raise AssertionError("unreachable")

    # ── Loop ────────────────────────────────────────────────────────

    def seconds_until_next_tick(self, now: datetime) -> float:
        """Tick interval, cut short by the next reference-timezone midnight."""
        boundary = self.resolver.next_day_boundary(now)
        until_boundary = (boundary - now).total_seconds()
        return max(0.001, min(float(self.tick_interval_seconds), until_boundary))

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick until *stop_event* is set."""
        logger.info(
            "Scheduler started: interval=%ss timezone=%s",
            self.tick_interval_seconds,
            self.resolver.timezone_name,
        )
        while not stop_event.is_set():
            new_correlation_id("tick-")
            try:
                self.on_tick()
            except Exception:
                logger.error("Tick failed", exc_info=True)
            stop_event.wait(self.seconds_until_next_tick(self._clock()))
        logger.info("Scheduler stopped")

    def _invalidate(self, refs: list[PeriodRef]) -> None:
        if self.ranker is None or not refs:
            return
        try:
            self.ranker.invalidate(refs)
        except Exception:
            logger.warning("Leaderboard cache invalidation failed", exc_info=True)
