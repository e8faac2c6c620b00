"""Unit tests for leaderboard ranking and tie-breaking logic.

Tests the pure-function ranking engine that determines leaderboard positions.
Tie-breaking order:
  1. Points descending
  2. Earlier qualified_at
  3. User ID (lexicographic)
"""

from __future__ import annotations

from datetime import UTC, datetime

from deedboard.services.leaderboard import compute_rankings, extract_user_context, ranking_key


class TestComputeRankings:
    """Test ranking computation with tie-breaking."""

    def test_simple_ranking_by_points(self):
        entries = [
            {"user_id": "a", "total_points": 100},
            {"user_id": "b", "total_points": 300},
            {"user_id": "c", "total_points": 200},
        ]
        ranked = compute_rankings(entries)
        assert [r["user_id"] for r in ranked] == ["b", "c", "a"]
        assert [r["rank"] for r in ranked] == [1, 2, 3]

    def test_tiebreak_by_qualified_at(self):
        """Same points: whoever reached the total first ranks higher."""
        entries = [
            {"user_id": "alice", "total_points": 50, "qualified_at": "2026-02-19T10:00:00+00:00"},
            {"user_id": "bob", "total_points": 50, "qualified_at": "2026-02-19T09:00:00+00:00"},
            {"user_id": "carol", "total_points": 30, "qualified_at": "2026-02-19T08:00:00+00:00"},
        ]
        ranked = compute_rankings(entries)
        assert [(r["user_id"], r["rank"]) for r in ranked] == [
            ("bob", 1),
            ("alice", 2),
            ("carol", 3),
        ]

    def test_tiebreak_by_user_id(self):
        """Same points and same time: user id decides."""
        when = datetime(2026, 2, 19, 10, 0, tzinfo=UTC)
        entries = [
            {"user_id": "zed", "total_points": 50, "qualified_at": when},
            {"user_id": "amy", "total_points": 50, "qualified_at": when},
        ]
        ranked = compute_rankings(entries)
        assert [r["user_id"] for r in ranked] == ["amy", "zed"]

    def test_missing_qualified_at_ranks_last_among_ties(self):
        entries = [
            {"user_id": "a", "total_points": 0, "qualified_at": None},
            {"user_id": "b", "total_points": 0, "qualified_at": "2026-02-19T09:00:00+00:00"},
        ]
        ranked = compute_rankings(entries)
        assert ranked[0]["user_id"] == "b"

    def test_mixed_timezone_offsets_compare_as_instants(self):
        entries = [
            {"user_id": "a", "total_points": 10, "qualified_at": "2026-02-19T15:30:00+06:00"},
            {"user_id": "b", "total_points": 10, "qualified_at": "2026-02-19T10:00:00+00:00"},
        ]
        ranked = compute_rankings(entries)
        # 15:30+06:00 is 09:30 UTC
        assert ranked[0]["user_id"] == "a"

    def test_empty_entries(self):
        assert compute_rankings([]) == []

    def test_single_entry(self):
        ranked = compute_rankings([{"user_id": "solo", "total_points": 42}])
        assert ranked == [{"user_id": "solo", "total_points": 42, "rank": 1}]

    def test_does_not_mutate_input(self):
        entries = [{"user_id": "a", "total_points": 1}]
        compute_rankings(entries)
        assert "rank" not in entries[0]

    def test_no_shared_ranks(self):
        entries = [{"user_id": str(i), "total_points": 10} for i in range(5)]
        ranks = [r["rank"] for r in compute_rankings(entries)]
        assert ranks == [1, 2, 3, 4, 5]

    def test_unparseable_timestamp_sorts_as_missing(self):
        key = ranking_key({"user_id": "a", "total_points": 5, "qualified_at": "yesterday"})
        assert key == ranking_key({"user_id": "a", "total_points": 5, "qualified_at": None})


class TestExtractUserContext:
    """Test user context extraction from rankings."""

    def _rankings(self, count: int) -> list[dict]:
        return compute_rankings(
            [{"user_id": f"u{i:03d}", "total_points": 1000 - i} for i in range(count)]
        )

    def test_user_in_middle(self):
        ctx = extract_user_context(self._rankings(50), "u025", window=10)
        assert ctx["user_rank"] == 26
        assert ctx["total_participants"] == 50
        assert len(ctx["context"]) == 21
        assert ctx["context"][0]["rank"] == 16

    def test_user_at_top(self):
        ctx = extract_user_context(self._rankings(50), "u000", window=10)
        assert ctx["user_rank"] == 1
        assert len(ctx["context"]) == 11

    def test_user_at_bottom(self):
        ctx = extract_user_context(self._rankings(50), "u049", window=10)
        assert ctx["user_rank"] == 50
        assert len(ctx["context"]) == 11

    def test_user_not_found(self):
        ctx = extract_user_context(self._rankings(5), "ghost")
        assert ctx["user_rank"] is None
        assert ctx["user_entry"] is None
        assert ctx["context"] == []
        assert ctx["total_participants"] == 5
