"""Admin routes: /api/v1/admin.

Operational triggers for the recompute scheduler. Authentication is
handled upstream of this service.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from deedboard.api.deps import get_engine
from deedboard.services.engine import Engine
from deedboard.services.leaderboard import normalize_period

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.post("/recompute/{period}/{period_key}")
def recompute_period(
    period: str,
    period_key: str,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Rebuild one period's totals from the event log."""
    kind = normalize_period(period)
    ref = engine.resolver.parse_period_key(kind, period_key)
    totals = engine.scheduler.repair(ref.kind, ref.key)
    return {
        "period": ref.kind,
        "period_key": ref.key,
        "users": len(totals),
        "total_points": sum(t.total_points for t in totals),
    }


@router.post("/tick")
def run_tick(engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    """Run one scheduler tick now."""
    return engine.scheduler.on_tick().to_dict()
