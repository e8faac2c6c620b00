"""Deed ingestion schemas."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, StrictInt

from deedboard.services.events import DeedEvent


class DeedEventCreate(BaseModel):
    """A completed-deed event pushed by the event source."""

    event_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    deed_id: str | None = Field(default=None, max_length=64)
    point_value: StrictInt
    occurred_at: datetime
    recorded_at: datetime | None = None
    category: str | None = Field(default=None, max_length=50)

    def to_event(self) -> DeedEvent:
        return DeedEvent(
            event_id=self.event_id,
            user_id=self.user_id,
            deed_id=self.deed_id,
            point_value=self.point_value,
            occurred_at=self.occurred_at,
            recorded_at=self.recorded_at or datetime.now(tz=UTC),
            category=self.category,
        )


class DeedComplete(BaseModel):
    """A user completing a predefined or custom deed."""

    user_id: str = Field(min_length=1, max_length=64)
    deed_id: str | None = Field(default=None, max_length=64)
    custom_deed_name: str | None = Field(default=None, max_length=255)
    occurred_at: datetime | None = None
    ramadan_day_number: int | None = Field(default=None, ge=1, le=30)
    event_id: str | None = Field(default=None, max_length=64)


class EventOutcomeResponse(BaseModel):
    """Result of ingesting one event."""

    event_id: str
    status: str
    error: str | None = None
    duplicate: bool | None = None
    totals: dict[str, Any] | None = None
    applied_periods: list[str] | None = None
    clock_skew: list[dict[str, str]] | None = None
