"""Dependency injection for FastAPI routes."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Query, Request

from deedboard.core.constants import LEADERBOARD_DEFAULT_LIMIT, LEADERBOARD_MAX_LIMIT
from deedboard.core.errors import LeaderboardError
from deedboard.services.cohorts import CohortFilter
from deedboard.services.engine import Engine


def get_engine(request: Request) -> Engine:
    """The engine built at startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


@dataclass
class PaginationParams:
    """Pagination parameters parsed from query string."""

    page: int
    limit: int


def get_pagination(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(
        LEADERBOARD_DEFAULT_LIMIT, ge=1, le=LEADERBOARD_MAX_LIMIT, description="Items per page"
    ),
) -> PaginationParams:
    """Parse pagination query parameters."""
    return PaginationParams(page=page, limit=limit)


def get_cohort_filter(
    scope: str = Query("global", description="global, country, division or district"),
    scope_id: str | None = Query(None, description="Identifier within the scope"),
) -> CohortFilter:
    """Parse the cohort query parameters; invalid scopes are a 400."""
    try:
        return CohortFilter(scope_type=scope, scope_id=scope_id)
    except LeaderboardError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail) from e
