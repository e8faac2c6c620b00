"""Leaderboard routes: /api/v1/leaderboards.

Endpoints for viewing cohort-scoped leaderboards and user rankings.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from deedboard.api.deps import PaginationParams, get_cohort_filter, get_engine, get_pagination
from deedboard.api.schemas.common import ErrorResponse
from deedboard.api.schemas.leaderboards import LeaderboardResponse, UserRankResponse
from deedboard.services.cohorts import CohortFilter
from deedboard.services.engine import Engine

router = APIRouter(prefix="/api/v1/leaderboards", tags=["leaderboards"])

PROBLEM_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid period, key or cohort"},
    503: {"model": ErrorResponse, "description": "Store unavailable and no snapshot cached"},
}


@router.get("/{period}", response_model=LeaderboardResponse, responses=PROBLEM_RESPONSES)
def get_leaderboard(
    period: str,
    period_key: str | None = Query(
        default=None,
        description="e.g. 2026-02-19, W2026-02-14, 2026-02. Defaults to the current period.",
    ),
    cohort: CohortFilter = Depends(get_cohort_filter),
    pagination: PaginationParams = Depends(get_pagination),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Get the leaderboard for a given period.

    Periods: daily, weekly, monthly, all_time.
    """
    return engine.ranker.get_leaderboard(
        period=period,
        period_key=period_key,
        cohort=cohort,
        page=pagination.page,
        limit=pagination.limit,
    )


@router.get("/{period}/users/{user_id}", response_model=UserRankResponse, responses=PROBLEM_RESPONSES)
def get_user_rank(
    period: str,
    user_id: str,
    period_key: str | None = Query(default=None),
    cohort: CohortFilter = Depends(get_cohort_filter),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Get a user's rank and surrounding context.

    Returns the user's position plus ±10 positions around them.
    """
    return engine.ranker.get_user_rank(
        user_id=user_id,
        period=period,
        period_key=period_key,
        cohort=cohort,
    )
