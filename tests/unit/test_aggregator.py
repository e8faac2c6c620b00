"""Tests for the aggregator: incremental apply, retries, late events, recompute."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from deedboard.core.errors import ClockSkew, InvalidEvent, RecomputeInterrupted, StoreUnavailable
from deedboard.services.aggregator import Aggregator
from deedboard.services.clock import PeriodRef
from deedboard.services.cohorts import StaticCohortResolver
from deedboard.services.events import DeedEvent, InMemoryEventStore
from deedboard.services.totals import InMemoryTotalsStore

T0 = datetime(2026, 2, 19, 6, 0, tzinfo=UTC)  # 12:00 on 2026-02-19 in Dhaka
DAY = PeriodRef("day", "2026-02-19")
WEEK = PeriodRef("week", "W2026-02-14")
MONTH = PeriodRef("month", "2026-02")
ALL = PeriodRef("all_time", "all")


def _event(event_id: str, user_id: str = "alice", points: int = 10, at: datetime = T0) -> DeedEvent:
    return DeedEvent(event_id, user_id, "d1", points, at, at)


class FlakyTotalsStore(InMemoryTotalsStore):
    """Fails the next ``failures`` increments with StoreUnavailable."""

    def __init__(self, failures: int = 0, fail_kinds: tuple[str, ...] = ()) -> None:
        super().__init__()
        self.failures = failures
        self.fail_kinds = fail_kinds
        self.calls = 0

    def apply_contribution(self, ref, contribution, written_at):  # type: ignore[no-untyped-def]
        self.calls += 1
        if self.failures and (not self.fail_kinds or ref.kind in self.fail_kinds):
            self.failures -= 1
            raise StoreUnavailable("store down")
        return super().apply_contribution(ref, contribution, written_at)


def _aggregator(resolver, totals_store=None, **kwargs) -> Aggregator:  # type: ignore[no-untyped-def]
    return Aggregator(
        resolver=resolver,
        event_store=kwargs.pop("event_store", InMemoryEventStore()),
        totals_store=totals_store or InMemoryTotalsStore(),
        retry_backoff_seconds=0,
        sleep=lambda _: None,
        **kwargs,
    )


class TestApplyEvent:
    def test_updates_all_four_periods(self, aggregator, totals_store):
        result = aggregator.apply_event(_event("e1"))
        assert result.applied == [DAY, WEEK, MONTH, ALL]
        assert not result.duplicate
        for ref in (DAY, WEEK, MONTH, ALL):
            total = totals_store.get_total("alice", ref)
            assert total.total_points == 10
            assert total.qualified_at == T0

    def test_replay_is_idempotent(self, aggregator, totals_store):
        event = _event("e1")
        aggregator.apply_event(event)
        again = aggregator.apply_event(event)
        assert again.duplicate
        assert again.to_dict()["duplicate"] is True
        assert totals_store.get_total("alice", DAY).total_points == 10

    def test_reused_event_id_rejected(self, aggregator):
        aggregator.apply_event(_event("e1", points=10))
        with pytest.raises(InvalidEvent):
            aggregator.apply_event(_event("e1", points=99))

    def test_invalid_event_stores_nothing(self, aggregator, event_store, totals_store):
        with pytest.raises(InvalidEvent):
            aggregator.apply_event(_event("e1", points=-5))
        assert len(event_store) == 0
        assert totals_store.scan_period(DAY) == []

    def test_zero_points_counts_event_only(self, aggregator, totals_store):
        aggregator.apply_event(_event("e1", points=0))
        total = totals_store.get_total("alice", DAY)
        assert (total.total_points, total.event_count, total.qualified_at) == (0, 1, None)

    def test_event_assigned_by_reference_timezone(self, aggregator, totals_store):
        # 18:30 UTC on the 18th is already the 19th in Dhaka
        aggregator.apply_event(_event("e1", at=datetime(2026, 2, 18, 18, 30, tzinfo=UTC)))
        assert totals_store.get_total("alice", DAY).total_points == 10
        assert totals_store.get_total("alice", PeriodRef("day", "2026-02-18")) is None

    def test_unknown_user_rejected(self, resolver):
        aggregator = _aggregator(resolver, user_lookup=StaticCohortResolver({"alice": {}}))
        aggregator.apply_event(_event("e1"))
        with pytest.raises(InvalidEvent, match="unknown user"):
            aggregator.apply_event(_event("e2", user_id="mallory"))

    def test_future_event_rejected(self, aggregator):
        event = DeedEvent("e1", "alice", None, 5, T0 + timedelta(hours=1), T0)
        with pytest.raises(InvalidEvent):
            aggregator.apply_event(event)


class TestStoreFailures:
    def test_transient_failure_is_retried(self, resolver):
        store = FlakyTotalsStore(failures=2)
        aggregator = _aggregator(resolver, store, retry_attempts=3)
        result = aggregator.apply_event(_event("e1"))
        assert len(result.applied) == 4
        assert store.get_total("alice", DAY).total_points == 10

    def test_exhausted_retries_raise(self, resolver):
        store = FlakyTotalsStore(failures=5)
        aggregator = _aggregator(resolver, store, retry_attempts=2)
        with pytest.raises(StoreUnavailable):
            aggregator.apply_event(_event("e1"))

    def test_half_applied_event_completes_on_retry(self, resolver):
        store = FlakyTotalsStore(failures=1, fail_kinds=("month",))
        event_store = InMemoryEventStore()
        aggregator = _aggregator(resolver, store, retry_attempts=1, event_store=event_store)
        event = _event("e1")

        with pytest.raises(StoreUnavailable):
            aggregator.apply_event(event)
        assert store.get_total("alice", DAY).total_points == 10
        assert store.get_total("alice", MONTH) is None

        result = aggregator.apply_event(event)
        assert result.applied == [MONTH, ALL]
        assert not result.duplicate
        for ref in (DAY, WEEK, MONTH, ALL):
            assert store.get_total("alice", ref).total_points == 10
        assert len(event_store) == 1

    def test_backoff_doubles(self, resolver):
        delays: list[float] = []
        store = FlakyTotalsStore(failures=2)
        aggregator = Aggregator(
            resolver=resolver,
            event_store=InMemoryEventStore(),
            totals_store=store,
            retry_attempts=3,
            retry_backoff_seconds=0.5,
            sleep=delays.append,
        )
        aggregator.apply_event(_event("e1"))
        assert delays == [0.5, 1.0]


class TestLateEvents:
    def test_late_event_reopens_finalized_period(self, aggregator, totals_store, caplog):
        aggregator.apply_event(_event("e1"))
        totals_store.finalize_total("alice", DAY)
        totals_store.mark_period_finalized(DAY)

        with caplog.at_level("WARNING"):
            result = aggregator.apply_event(_event("e2", points=5, at=T0 + timedelta(hours=1)))

        assert result.skew == [ClockSkew("e2", "alice", "day", "2026-02-19")]
        assert not totals_store.is_period_finalized(DAY)
        total = totals_store.get_total("alice", DAY)
        assert total.total_points == 15
        assert total.finalized is False
        assert "reopened finalized period" in caplog.text

    def test_duplicate_into_finalized_period_does_not_reopen(self, aggregator, totals_store):
        event = _event("e1")
        aggregator.apply_event(event)
        totals_store.mark_period_finalized(DAY)
        result = aggregator.apply_event(event)
        assert result.skew == []
        assert totals_store.is_period_finalized(DAY)


class TestRecompute:
    def test_recompute_repairs_drift(self, aggregator, totals_store):
        aggregator.apply_event(_event("e1"))
        aggregator.apply_event(_event("e2", user_id="bob", points=30))
        drifted = replace(totals_store.get_total("alice", DAY), total_points=999)
        totals_store._rows[DAY]["alice"] = drifted

        totals = aggregator.recompute("day", "2026-02-19")
        assert {t.user_id: t.total_points for t in totals} == {"alice": 10, "bob": 30}
        assert totals_store.get_total("alice", DAY).total_points == 10

    def test_recompute_only_reads_events_in_period(self, aggregator, totals_store):
        aggregator.apply_event(_event("e1"))
        aggregator.apply_event(_event("e2", at=T0 + timedelta(days=1)))
        totals = aggregator.recompute("day", "2026-02-19")
        assert [t.total_points for t in totals] == [10]

    def test_cancelled_recompute_keeps_previous_totals(self, aggregator, totals_store):
        aggregator.apply_event(_event("e1"))
        aggregator.apply_event(_event("e2", user_id="bob"))
        before = totals_store.scan_period(DAY)

        cancel = threading.Event()
        cancel.set()
        with pytest.raises(RecomputeInterrupted) as info:
            aggregator.recompute("day", "2026-02-19", cancel=cancel)

        assert info.value.cancelled is True
        assert totals_store.scan_period(DAY) == before

    def test_cancel_between_users(self, aggregator, totals_store):
        for i, user in enumerate(["alice", "bob", "carol"]):
            aggregator.apply_event(_event(f"e{i}", user_id=user))
        before = totals_store.scan_period(DAY)

        class CancelAfter:
            def __init__(self, checks: int) -> None:
                self.checks = checks

            def is_set(self) -> bool:
                self.checks -= 1
                return self.checks < 0

        with pytest.raises(RecomputeInterrupted, match="cancelled after 2 of 3 users"):
            aggregator.recompute("day", "2026-02-19", cancel=CancelAfter(2))
        assert totals_store.scan_period(DAY) == before

    def test_failed_recompute_raises_interrupted(self, resolver, totals_store):
        class BrokenLog(InMemoryEventStore):
            def scan(self, start=None, end=None):  # type: ignore[no-untyped-def]
                raise RuntimeError("disk on fire")

        aggregator = _aggregator(resolver, totals_store, event_store=BrokenLog())
        with pytest.raises(RecomputeInterrupted) as info:
            aggregator.recompute("day", "2026-02-19")
        assert info.value.cancelled is False
        assert isinstance(info.value.__cause__, RuntimeError)

    def test_recompute_concurrent_with_apply(self, aggregator, totals_store):
        errors: list[BaseException] = []

        def ingest() -> None:
            try:
                for i in range(150):
                    aggregator.apply_event(_event(f"e{i}", points=2, at=T0 + timedelta(seconds=i)))
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        def recompute() -> None:
            try:
                for _ in range(15):
                    aggregator.recompute("day", "2026-02-19")
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=ingest), threading.Thread(target=recompute)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        total = totals_store.get_total("alice", DAY)
        assert total.total_points == 300
        assert total.event_count == 150
        assert total.qualified_at == T0 + timedelta(seconds=149)

    def test_invalid_period_key(self, aggregator):
        from deedboard.core.errors import LeaderboardError

        with pytest.raises(LeaderboardError):
            aggregator.recompute("day", "not-a-day")

    def test_rebuild_recomputes_every_touched_period(self, aggregator, totals_store):
        aggregator.apply_event(_event("e1"))
        aggregator.apply_event(_event("e2", at=T0 + timedelta(days=20)))
        refs = aggregator.rebuild()
        assert DAY in refs and ALL in refs
        assert PeriodRef("month", "2026-03") in refs
        assert totals_store.get_total("alice", ALL).total_points == 20
