"""Day-boundary resolver: the one place period boundaries are computed.

Every "what day is it" question is answered in the configured reference
timezone, never in the host's local timezone and never in the caller's.
Boundaries are resolved through the tz database (``zoneinfo``), so a day
can be 23 or 25 hours long around DST transitions but still maps to exactly
one calendar date.

Intervals are half-open: an instant exactly on a boundary belongs to the
period that starts there.

Period key formats:
  - day:      ``2026-02-19``
  - week:     ``W2026-02-14`` (date of the configured first day of week)
  - month:    ``2026-02``
  - all_time: ``all``
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo

from deedboard.core.constants import (
    ALL_TIME_KEY,
    PERIOD_ALL_TIME,
    PERIOD_DAY,
    PERIOD_KINDS,
    PERIOD_MONTH,
    PERIOD_WEEK,
    WEEK_KEY_PREFIX,
    WEEKDAY_NAMES,
)
from deedboard.core.errors import LeaderboardError

_ONE_TICK = timedelta(microseconds=1)


@dataclass(frozen=True, order=True)
class DayKey:
    """A calendar day in a specific reference timezone."""

    day: date
    timezone: str

    def __str__(self) -> str:
        return self.day.isoformat()


class PeriodRef(NamedTuple):
    """One aggregation window, e.g. ``PeriodRef("week", "W2026-02-14")``."""

    kind: str
    key: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.key}"


def ensure_utc(instant: datetime) -> datetime:
    """Return *instant* as an aware UTC datetime; naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


class DayBoundaryResolver:
    """Maps instants to day/week/month keys in one reference timezone."""

    def __init__(self, timezone: str = "UTC", first_day_of_week: str | int = "monday") -> None:
        self.timezone_name = timezone
        self.tz = ZoneInfo(timezone)
        if isinstance(first_day_of_week, str):
            try:
                self.week_start = WEEKDAY_NAMES[first_day_of_week.lower()]
            except KeyError as exc:
                raise ValueError(f"Invalid first day of week: {first_day_of_week}") from exc
        else:
            if not 0 <= first_day_of_week <= 6:
                raise ValueError(f"Invalid first day of week: {first_day_of_week}")
            self.week_start = first_day_of_week

    @classmethod
    def from_settings(cls, settings: object) -> DayBoundaryResolver:
        return cls(
            timezone=getattr(settings, "reference_timezone"),
            first_day_of_week=getattr(settings, "first_day_of_week"),
        )

    def __repr__(self) -> str:
        return f"DayBoundaryResolver(timezone={self.timezone_name!r}, week_start={self.week_start})"

    # ── Day keys ────────────────────────────────────────────────────

    def local_date(self, instant: datetime) -> date:
        return ensure_utc(instant).astimezone(self.tz).date()

    def day_key(self, instant: datetime) -> DayKey:
        return DayKey(self.local_date(instant), self.timezone_name)

    def _midnight(self, day: date) -> datetime:
        # Round-trip through UTC so a midnight that falls in a DST gap or
        # overlap resolves to the real first instant of the day.
        local = datetime.combine(day, time.min, tzinfo=self.tz)
        return local.astimezone(UTC).astimezone(self.tz)

    def week_start_date(self, day: date) -> date:
        return day - timedelta(days=(day.weekday() - self.week_start) % 7)

    # ── Floors ──────────────────────────────────────────────────────

    def start_of_day(self, instant: datetime) -> datetime:
        return self._midnight(self.local_date(instant))

    def start_of_week(self, instant: datetime) -> datetime:
        return self._midnight(self.week_start_date(self.local_date(instant)))

    def start_of_month(self, instant: datetime) -> datetime:
        return self._midnight(self.local_date(instant).replace(day=1))

    def floor(self, kind: str, instant: datetime) -> datetime | None:
        """Start of the *kind* period containing *instant* (``None`` for all-time)."""
        if kind == PERIOD_DAY:
            return self.start_of_day(instant)
        if kind == PERIOD_WEEK:
            return self.start_of_week(instant)
        if kind == PERIOD_MONTH:
            return self.start_of_month(instant)
        if kind == PERIOD_ALL_TIME:
            return None
        raise LeaderboardError(f"Invalid period: {kind}")

    def next_day_boundary(self, instant: datetime) -> datetime:
        """First instant of the day after the one containing *instant*."""
        return self._midnight(self.local_date(instant) + timedelta(days=1))

    # ── Period keys ─────────────────────────────────────────────────

    def key_for_day(self, kind: str, day: date) -> str:
        if kind == PERIOD_DAY:
            return day.isoformat()
        if kind == PERIOD_WEEK:
            return f"{WEEK_KEY_PREFIX}{self.week_start_date(day).isoformat()}"
        if kind == PERIOD_MONTH:
            return f"{day.year:04d}-{day.month:02d}"
        if kind == PERIOD_ALL_TIME:
            return ALL_TIME_KEY
        raise LeaderboardError(f"Invalid period: {kind}")

    def period_key(self, kind: str, instant: datetime) -> str:
        return self.key_for_day(kind, self.local_date(instant))

    def period_ref(self, kind: str, instant: datetime) -> PeriodRef:
        return PeriodRef(kind, self.period_key(kind, instant))

    def refs_for(self, instant: datetime) -> list[PeriodRef]:
        """The day, week, month and all-time windows containing *instant*.

        All four are derived from the same DayKey.
        """
        day = self.day_key(instant).day
        return [PeriodRef(kind, self.key_for_day(kind, day)) for kind in PERIOD_KINDS]

    def previous_ref(self, kind: str, now: datetime) -> PeriodRef | None:
        """The period immediately before the one containing *now*."""
        start = self.floor(kind, now)
        if start is None:
            return None
        return self.period_ref(kind, start - _ONE_TICK)

    # ── Parsing and bounds ──────────────────────────────────────────

    def first_day(self, kind: str, key: str) -> date | None:
        """Validate *key* and return the first local date of its period."""
        if kind not in PERIOD_KINDS:
            raise LeaderboardError(f"Invalid period: {kind}")
        if kind == PERIOD_ALL_TIME:
            if key != ALL_TIME_KEY:
                raise LeaderboardError(f"Invalid all-time key: {key}")
            return None

        try:
            if kind == PERIOD_DAY:
                first = date.fromisoformat(key)
            elif kind == PERIOD_WEEK:
                if not key.startswith(WEEK_KEY_PREFIX):
                    raise ValueError(key)
                first = date.fromisoformat(key[len(WEEK_KEY_PREFIX) :])
            else:
                first = date.fromisoformat(f"{key}-01")
        except ValueError as exc:
            raise LeaderboardError(f"Invalid {kind} key: {key}") from exc

        if self.key_for_day(kind, first) != key:
            raise LeaderboardError(f"Invalid {kind} key: {key}")
        return first

    def parse_period_key(self, kind: str, key: str) -> PeriodRef:
        """Validated ``PeriodRef`` for an externally supplied key."""
        self.first_day(kind, key)
        return PeriodRef(kind, key)

    def period_bounds(self, kind: str, key: str) -> tuple[datetime | None, datetime | None]:
        """Half-open UTC interval ``[start, end)`` of a period; all-time is unbounded."""
        first = self.first_day(kind, key)
        if first is None:
            return None, None

        if kind == PERIOD_DAY:
            following = first + timedelta(days=1)
        elif kind == PERIOD_WEEK:
            following = first + timedelta(days=7)
        elif first.month == 12:
            following = date(first.year + 1, 1, 1)
        else:
            following = date(first.year, first.month + 1, 1)

        return (
            self._midnight(first).astimezone(UTC),
            self._midnight(following).astimezone(UTC),
        )

    def has_ended(self, ref: PeriodRef, now: datetime) -> bool:
        """True once the whole window of *ref* lies at or before *now*."""
        _, end = self.period_bounds(ref.kind, ref.key)
        return end is not None and end <= ensure_utc(now)
