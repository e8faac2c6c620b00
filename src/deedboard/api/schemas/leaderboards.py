"""Leaderboard response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from deedboard.api.schemas.common import PaginationMeta


class LeaderboardEntryResponse(BaseModel):
    rank: int
    user_id: str
    total_points: int
    cohort: str
    qualified_at: datetime | None = None


class LeaderboardResponse(BaseModel):
    """One page of a period leaderboard."""

    period: str
    period_key: str
    cohort: str
    finalized: bool
    as_of: datetime | None = None
    stale: bool = False
    items: list[LeaderboardEntryResponse]
    pagination: PaginationMeta


class UserRankResponse(BaseModel):
    """A user's rank with the entries around it."""

    period: str
    period_key: str
    cohort: str
    as_of: datetime | None = None
    user_rank: int | None = None
    user_entry: LeaderboardEntryResponse | None = None
    total_participants: int
    context: list[LeaderboardEntryResponse]
