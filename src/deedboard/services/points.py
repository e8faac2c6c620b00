"""Deed points: base points, power days, prayer streak bonuses."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from deedboard.core.constants import (
    POWER_DAY_MULTIPLIER,
    POWER_DAY_WEEKDAY,
    PRAYER_CATEGORY,
    PRAYER_STREAK_BONUSES,
    PRAYER_STREAK_LOOKBACK_DAYS,
    RAMADAN_POWER_NIGHTS,
)
from deedboard.core.errors import InvalidEvent
from deedboard.services.clock import DayBoundaryResolver
from deedboard.services.events import DeedEvent, new_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointCalculation:
    base_points: int
    bonus_points: int
    multiplier: float
    total_points: int
    streak_days: int
    is_streak_bonus: bool
    is_power_day: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_points": self.base_points,
            "bonus_points": self.bonus_points,
            "multiplier": self.multiplier,
            "total_points": self.total_points,
            "streak_days": self.streak_days,
            "is_streak_bonus": self.is_streak_bonus,
            "is_power_day": self.is_power_day,
        }


# ── Calculators ─────────────────────────────────────────────────────


def is_power_day(day: date, ramadan_day_number: int | None = None) -> bool:
    """Friday (Jummah), or one of the last ten nights of Ramadan."""
    if day.weekday() == POWER_DAY_WEEKDAY:
        return True
    low, high = RAMADAN_POWER_NIGHTS
    return ramadan_day_number is not None and low <= ramadan_day_number <= high


def count_streak(days: set[date], ending_on: date) -> int:
    """Number of consecutive days in *days* ending on *ending_on*."""
    streak = 0
    current = ending_on
    while current in days:
        streak += 1
        current -= timedelta(days=1)
    return streak


def streak_bonus(streak_days: int) -> int:
    """Bonus for the longest streak threshold reached (7 → 100, 15 → 250, 30 → 1000)."""
    for threshold, bonus in PRAYER_STREAK_BONUSES:
        if streak_days >= threshold:
            return bonus
    return 0


def calculate_deed_points(
    base_points: int,
    day: date,
    streak_days: int = 0,
    ramadan_day_number: int | None = None,
) -> PointCalculation:
    """Total = floor((base + streak bonus) × power-day multiplier)."""
    if base_points < 0:
        raise InvalidEvent("Deed points must not be negative")

    bonus = streak_bonus(streak_days)
    power = is_power_day(day, ramadan_day_number)
    multiplier = POWER_DAY_MULTIPLIER if power else 1.0
    return PointCalculation(
        base_points=base_points,
        bonus_points=bonus,
        multiplier=multiplier,
        total_points=math.floor((base_points + bonus) * multiplier),
        streak_days=streak_days,
        is_streak_bonus=bonus > 0,
        is_power_day=power,
    )


# ── Deed catalog ────────────────────────────────────────────────────


@dataclass(frozen=True)
class PredefinedDeed:
    deed_id: str
    name: str
    points: int
    category: str | None = None


class InMemoryDeedCatalog:
    """Predefined deeds held in process memory."""

    def __init__(self, deeds: list[PredefinedDeed] | None = None) -> None:
        self._deeds = {d.deed_id: d for d in deeds or []}

    def add(self, deed: PredefinedDeed) -> None:
        self._deeds[deed.deed_id] = deed

    def get(self, deed_id: str) -> PredefinedDeed | None:
        return self._deeds.get(deed_id)

    def list_active(self) -> list[PredefinedDeed]:
        return sorted(self._deeds.values(), key=lambda d: d.deed_id)


# ── Deed service ────────────────────────────────────────────────────


class DeedService:
    """Turns a deed completion into a scored ``DeedEvent`` and ingests it.

    Receives its collaborators via __init__, no global state.
    """

    def __init__(
        self,
        resolver: DayBoundaryResolver,
        scheduler: Any,
        event_store: Any,
        catalog: Any,
        custom_deed_points: int = 10,
    ) -> None:
        self.resolver = resolver
        self.scheduler = scheduler
        self.event_store = event_store
        self.catalog = catalog
        self.custom_deed_points = custom_deed_points

    def prayer_streak(self, user_id: str, occurred_at: datetime, includes_today: bool) -> int:
        """Consecutive reference-timezone days with a prayer deed, ending today."""
        today = self.resolver.local_date(occurred_at)
        lookback = today - timedelta(days=PRAYER_STREAK_LOOKBACK_DAYS - 1)
        start, _ = self.resolver.period_bounds("day", lookback.isoformat())
        _, end = self.resolver.period_bounds("day", today.isoformat())

        days = {
            self.resolver.local_date(e.occurred_at)
            for e in self.event_store.find_by_user(user_id, start, end)
            if e.category == PRAYER_CATEGORY
        }
        if includes_today:
            days.add(today)
        return count_streak(days, today)

    def complete_deed(
        self,
        user_id: str,
        deed_id: str | None = None,
        custom_deed_name: str | None = None,
        occurred_at: datetime | None = None,
        ramadan_day_number: int | None = None,
        event_id: str | None = None,
    ) -> dict[str, Any]:
        """Score a completed deed and hand it to the scheduler.

        Predefined deeds carry their own points; custom deeds earn the
        configured default.
        """
        if deed_id is None and not custom_deed_name:
            raise InvalidEvent("Either deed_id or custom_deed_name is required")

        if event_id is not None:
            stored = self.event_store.get(event_id)
            if stored is not None:
                return self._replay(stored, user_id, deed_id)

        base_points = self.custom_deed_points
        category = None
        if deed_id is not None:
            deed = self.catalog.get(deed_id)
            if deed is None:
                raise InvalidEvent(f"Unknown deed: {deed_id}", status_code=404)
            base_points = deed.points
            category = deed.category

        now = datetime.now(tz=UTC)
        occurred_at = occurred_at or now
        is_prayer = category == PRAYER_CATEGORY
        streak = self.prayer_streak(user_id, occurred_at, is_prayer) if is_prayer else 0

        calc = calculate_deed_points(
            base_points,
            self.resolver.local_date(occurred_at),
            streak_days=streak,
            ramadan_day_number=ramadan_day_number,
        )
        event: DeedEvent = new_event(
            user_id=user_id,
            point_value=calc.total_points,
            deed_id=deed_id,
            occurred_at=occurred_at,
            category=category,
            event_id=event_id,
            recorded_at=now,
        )
        outcome = self.scheduler.on_event(event)

        logger.info(
            "Deed completed: user=%s deed=%s points=%d power_day=%s streak=%d",
            user_id,
            deed_id or custom_deed_name,
            calc.total_points,
            calc.is_power_day,
            streak,
        )
        return {
            "event": event.to_dict(),
            "points": calc.to_dict(),
            "outcome": outcome.to_dict(),
        }

    def _replay(self, stored: DeedEvent, user_id: str, deed_id: str | None) -> dict[str, Any]:
        # Points were fixed when the event was first scored.
        if stored.user_id != user_id or stored.deed_id != deed_id:
            raise InvalidEvent(f"Event id {stored.event_id} already used by a different event")
        outcome = self.scheduler.on_event(stored)
        return {
            "event": stored.to_dict(),
            "points": None,
            "outcome": outcome.to_dict(),
        }
