"""User routes: /api/v1/users."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from deedboard.api.deps import get_engine
from deedboard.services.engine import Engine

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("/{user_id}/totals")
def get_user_totals(user_id: str, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    """The user's current day, week, month and all-time totals."""
    return engine.ranker.get_user_totals(user_id)
