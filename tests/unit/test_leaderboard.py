"""Tests for the leaderboard ranker: periods, cohorts, pagination, caching."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from deedboard.core.errors import LeaderboardError, StoreUnavailable
from deedboard.services.cache import CacheService
from deedboard.services.clock import PeriodRef
from deedboard.services.cohorts import CohortFilter, StaticCohortResolver
from deedboard.services.events import DeedEvent
from deedboard.services.leaderboard import LeaderboardRanker, normalize_period
from deedboard.services.totals import Contribution, InMemoryTotalsStore

T0 = datetime(2026, 2, 19, 3, 0, tzinfo=UTC)  # 09:00 Dhaka
DAY = PeriodRef("day", "2026-02-19")


def _apply(aggregator, event_id: str, user_id: str, points: int, minutes: int = 0) -> None:  # type: ignore[no-untyped-def]
    at = T0 + timedelta(minutes=minutes)
    aggregator.apply_event(DeedEvent(event_id, user_id, None, points, at, at))


@pytest.fixture
def tied(aggregator):  # type: ignore[no-untyped-def]
    """alice reaches 50 at 10:00, bob at 09:00, carol has 30."""
    _apply(aggregator, "a1", "alice", 20, minutes=0)
    _apply(aggregator, "a2", "alice", 30, minutes=60)
    _apply(aggregator, "b1", "bob", 50, minutes=0)
    _apply(aggregator, "c1", "carol", 30, minutes=30)
    return aggregator


class TestNormalizePeriod:
    @pytest.mark.parametrize(
        ("alias", "kind"),
        [("daily", "day"), ("WEEK", "week"), ("monthly", "month"), ("overall", "all_time")],
    )
    def test_aliases(self, alias: str, kind: str):
        assert normalize_period(alias) == kind

    @pytest.mark.parametrize("bad", ["", "yearly", "hour"])
    def test_invalid(self, bad: str):
        with pytest.raises(LeaderboardError, match="Invalid period"):
            normalize_period(bad)


class TestRank:
    def test_tie_broken_by_qualification_time(self, tied, ranker):
        entries = ranker.rank("day", "2026-02-19")
        assert [(e.rank, e.user_id, e.total_points) for e in entries] == [
            (1, "bob", 50),
            (2, "alice", 50),
            (3, "carol", 30),
        ]
        assert entries[1].qualified_at == T0 + timedelta(minutes=60)

    def test_rank_is_stable_across_calls(self, tied, ranker):
        assert ranker.rank("day", "2026-02-19") == ranker.rank("day", "2026-02-19")

    def test_cohort_filter_applied_before_ranking(self, tied, ranker):
        entries = ranker.rank("day", "2026-02-19", CohortFilter("district", "32"))
        assert [(e.rank, e.user_id, e.cohort) for e in entries] == [(1, "bob", "district:32")]

        division = ranker.rank("day", "2026-02-19", CohortFilter("division", "3"))
        assert [e.user_id for e in division] == ["bob", "alice"]
        assert [e.rank for e in division] == [1, 2]

    def test_empty_cohort(self, tied, ranker):
        assert ranker.rank("day", "2026-02-19", CohortFilter("division", "99")) == []

    def test_cohort_members_fetched_once(self, tied, resolver, totals_store, cohorts):
        calls: list[tuple[str, str]] = []

        class CountingResolver(StaticCohortResolver):
            def members(self, scope_type: str, scope_id: str) -> set[str]:
                calls.append((scope_type, scope_id))
                return cohorts.members(scope_type, scope_id)

            def resolve(self, user_id: str):  # type: ignore[no-untyped-def]
                raise AssertionError("per-user lookup")

        ranker = LeaderboardRanker(resolver, totals_store, CountingResolver())
        entries = ranker.rank("day", "2026-02-19", CohortFilter("country", "1"))
        assert [e.user_id for e in entries] == ["bob", "alice", "carol"]
        assert calls == [("country", "1")]

    def test_cohort_without_resolver(self, tied, resolver, totals_store):
        ranker = LeaderboardRanker(resolver, totals_store)
        with pytest.raises(LeaderboardError) as info:
            ranker.rank("day", "2026-02-19", CohortFilter("district", "31"))
        assert info.value.status_code == 501

    def test_cohort_requires_scope_id(self):
        with pytest.raises(LeaderboardError, match="requires a scope id"):
            CohortFilter("district")

    def test_invalid_key(self, ranker):
        with pytest.raises(LeaderboardError):
            ranker.rank("week", "W2026-02-15")


class TestGetLeaderboard:
    def test_defaults_to_current_period(self, tied, ranker):
        board = ranker.get_leaderboard("daily", now=T0 + timedelta(hours=2))
        assert board["period"] == "day"
        assert board["period_key"] == "2026-02-19"
        assert board["cohort"] == "global"
        assert board["stale"] is False
        assert board["finalized"] is False
        assert [i["user_id"] for i in board["items"]] == ["bob", "alice", "carol"]

    def test_pagination(self, tied, ranker):
        page = ranker.get_leaderboard("day", "2026-02-19", page=2, limit=2)
        assert [i["rank"] for i in page["items"]] == [3]
        assert page["pagination"] == {"page": 2, "limit": 2, "total_items": 3, "total_pages": 2}

    def test_empty_period(self, ranker):
        board = ranker.get_leaderboard("day", "2026-01-01")
        assert board["items"] == []
        assert board["as_of"] is None
        assert board["pagination"]["total_pages"] == 1

    def test_page_must_be_positive(self, ranker):
        with pytest.raises(LeaderboardError):
            ranker.get_leaderboard("day", "2026-02-19", page=0)

    def test_week_and_all_time(self, tied, ranker):
        week = ranker.get_leaderboard("week", "W2026-02-14")
        overall = ranker.get_leaderboard("all_time", "all")
        assert [i["user_id"] for i in week["items"]] == ["bob", "alice", "carol"]
        assert overall["items"] == week["items"]

    def test_finalized_flag(self, tied, ranker, totals_store):
        totals_store.mark_period_finalized(DAY)
        assert ranker.get_leaderboard("day", "2026-02-19")["finalized"] is True


class TestUserQueries:
    def test_user_rank_with_context(self, tied, ranker):
        ctx = ranker.get_user_rank("alice", "day", "2026-02-19", window=1)
        assert ctx["user_rank"] == 2
        assert ctx["total_participants"] == 3
        assert [e["user_id"] for e in ctx["context"]] == ["bob", "alice", "carol"]

    def test_user_rank_in_cohort(self, tied, ranker):
        ctx = ranker.get_user_rank("alice", "day", "2026-02-19", CohortFilter("district", "31"))
        assert ctx["user_rank"] == 1
        assert ctx["cohort"] == "district:31"

    def test_user_totals(self, tied, ranker):
        totals = ranker.get_user_totals("alice", now=T0 + timedelta(hours=2))
        assert totals["day_key"] == "2026-02-19"
        assert totals["periods"]["day"]["total_points"] == 50
        assert totals["periods"]["week"]["period_key"] == "W2026-02-14"
        assert totals["periods"]["all_time"]["event_count"] == 2

    def test_user_totals_without_activity(self, ranker):
        totals = ranker.get_user_totals("nobody", now=T0)
        assert all(p["total_points"] == 0 for p in totals["periods"].values())


class TestCaching:
    def test_snapshot_served_from_cache(self, tied, resolver, totals_store, cohorts):
        cache = CacheService()
        ranker = LeaderboardRanker(resolver, totals_store, cohorts, cache_service=cache)
        first = ranker.snapshot(DAY)
        assert cache.get("leaderboard:day:2026-02-19:global") == first

        _apply(tied, "d1", "dave", 500)
        assert ranker.snapshot(DAY) == first

    def test_invalidate_drops_period_keys(self, tied, resolver, totals_store, cohorts):
        cache = CacheService()
        ranker = LeaderboardRanker(resolver, totals_store, cohorts, cache_service=cache)
        ranker.snapshot(DAY)
        ranker.snapshot(DAY, CohortFilter("division", "3"))
        ranker.snapshot(PeriodRef("all_time", "all"))

        assert ranker.invalidate([DAY]) == 2
        assert cache.get("leaderboard:all_time:all:global") is not None
        assert ranker.invalidate() == 1

    def test_scheduler_invalidates_on_event(self, tied, resolver, totals_store, cohorts):
        from deedboard.workers.recompute_scheduler import RecomputeScheduler

        cache = CacheService()
        ranker = LeaderboardRanker(resolver, totals_store, cohorts, cache_service=cache)
        scheduler = RecomputeScheduler(tied, ranker=ranker)
        ranker.snapshot(DAY)

        at = T0 + timedelta(minutes=5)
        scheduler.on_event(DeedEvent("d1", "dave", None, 500, at, at))
        assert ranker.snapshot(DAY)["entries"][0]["user_id"] == "dave"


class FailingTotalsStore(InMemoryTotalsStore):
    down = False

    def scan_period(self, ref):  # type: ignore[no-untyped-def]
        if self.down:
            raise StoreUnavailable("store down")
        return super().scan_period(ref)


class TestStaleSnapshots:
    def test_serves_last_snapshot_when_store_down(self, resolver):
        store = FailingTotalsStore()
        ranker = LeaderboardRanker(resolver, store)
        store.apply_contribution(DAY, Contribution("e1", "alice", 10, T0), T0)
        fresh = ranker.snapshot(DAY)

        store.down = True
        stale = ranker.snapshot(DAY)
        assert stale["stale"] is True
        assert stale["entries"] == fresh["entries"]
        assert stale["as_of"] == fresh["as_of"]

    def test_raises_without_previous_snapshot(self, resolver):
        store = FailingTotalsStore()
        store.down = True
        ranker = LeaderboardRanker(resolver, store)
        with pytest.raises(StoreUnavailable):
            ranker.snapshot(DAY)

    def test_fallback_keeps_most_recent_snapshots(self, resolver, monkeypatch):
        monkeypatch.setattr("deedboard.services.leaderboard.LEADERBOARD_FALLBACK_SNAPSHOTS", 2)
        store = FailingTotalsStore()
        ranker = LeaderboardRanker(resolver, store)
        days = [PeriodRef("day", f"2026-02-{d}") for d in (17, 18, 19)]
        ranker.snapshot(days[0])
        ranker.snapshot(days[1])
        ranker.snapshot(days[0])
        ranker.snapshot(days[2])

        store.down = True
        with pytest.raises(StoreUnavailable):
            ranker.snapshot(days[1])
        assert ranker.snapshot(days[0])["stale"] is True
        assert ranker.snapshot(days[2])["stale"] is True


class TestStaticCohortResolver:
    def test_members(self, cohorts):
        assert cohorts.members("division", "3") == {"alice", "bob"}
        assert cohorts.members("district", "41") == {"carol"}
        assert cohorts.members("district", "99") == set()

    def test_unknown_users_belong_to_no_cohort(self, cohorts):
        assert cohorts.resolve("ghost") == {}
        assert "ghost" not in cohorts.members("country", "1")
