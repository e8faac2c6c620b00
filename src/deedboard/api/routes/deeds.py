"""Deed routes: /api/v1/deeds.

Ingestion of completed deeds. Both endpoints end in the scheduler's
``on_event``; an event that hits a store outage is accepted as pending
(202) and retried on the next tick.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response

from deedboard.api.deps import get_engine
from deedboard.api.schemas.deeds import DeedComplete, DeedEventCreate, EventOutcomeResponse
from deedboard.services.engine import Engine

router = APIRouter(prefix="/api/v1/deeds", tags=["deeds"])


@router.post("/events", response_model=EventOutcomeResponse)
def ingest_event(
    body: DeedEventCreate,
    response: Response,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Ingest a deed event with a precomputed point value."""
    outcome = engine.scheduler.on_event(body.to_event())
    if outcome.pending:
        response.status_code = 202
    return outcome.to_dict()


@router.post("/complete")
def complete_deed(
    body: DeedComplete,
    response: Response,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Score a predefined or custom deed and ingest it."""
    result = engine.deed_service.complete_deed(
        user_id=body.user_id,
        deed_id=body.deed_id,
        custom_deed_name=body.custom_deed_name,
        occurred_at=body.occurred_at,
        ramadan_day_number=body.ramadan_day_number,
        event_id=body.event_id,
    )
    if result["outcome"]["status"] == "pending":
        response.status_code = 202
    return result


@router.get("/catalog")
def list_deeds(engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    """Predefined deeds and their base points."""
    deeds = engine.catalog.list_active()
    return {
        "items": [
            {"deed_id": d.deed_id, "name": d.name, "points": d.points, "category": d.category}
            for d in deeds
        ],
        "custom_deed_points": engine.settings.custom_deed_points,
    }
