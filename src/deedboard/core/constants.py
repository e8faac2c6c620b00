"""Domain constants for Deedboard."""

from __future__ import annotations

# ── Periods ─────────────────────────────────────────────────────────
PERIOD_DAY = "day"
PERIOD_WEEK = "week"
PERIOD_MONTH = "month"
PERIOD_ALL_TIME = "all_time"

PERIOD_KINDS: tuple[str, ...] = (PERIOD_DAY, PERIOD_WEEK, PERIOD_MONTH, PERIOD_ALL_TIME)

# Periods that roll over and get finalized
ROLLING_PERIOD_KINDS: tuple[str, ...] = (PERIOD_DAY, PERIOD_WEEK, PERIOD_MONTH)

# Names accepted on the HTTP surface
PERIOD_ALIASES: dict[str, str] = {
    "day": PERIOD_DAY,
    "daily": PERIOD_DAY,
    "today": PERIOD_DAY,
    "week": PERIOD_WEEK,
    "weekly": PERIOD_WEEK,
    "month": PERIOD_MONTH,
    "monthly": PERIOD_MONTH,
    "all_time": PERIOD_ALL_TIME,
    "all": PERIOD_ALL_TIME,
    "overall": PERIOD_ALL_TIME,
}

ALL_TIME_KEY = "all"
WEEK_KEY_PREFIX = "W"

# Python weekday() numbering
WEEKDAY_NAMES: dict[str, int] = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

# ── Cohorts ─────────────────────────────────────────────────────────
SCOPE_GLOBAL = "global"
SCOPE_TYPES: tuple[str, ...] = (SCOPE_GLOBAL, "country", "division", "district")

# ── Leaderboard ─────────────────────────────────────────────────────
LEADERBOARD_DEFAULT_LIMIT = 50
LEADERBOARD_MAX_LIMIT = 100
LEADERBOARD_CONTEXT_WINDOW = 10  # ±10 positions around user
LEADERBOARD_FALLBACK_SNAPSHOTS = 256  # last-good snapshots kept per process

# ── Deed points ─────────────────────────────────────────────────────
POWER_DAY_WEEKDAY = 4  # Friday (Jummah)
POWER_DAY_MULTIPLIER = 2.0
RAMADAN_POWER_NIGHTS = (21, 30)  # inclusive

PRAYER_CATEGORY = "prayer"

# Streak length (days) → bonus points, longest first
PRAYER_STREAK_BONUSES: tuple[tuple[int, int], ...] = (
    (30, 1_000),
    (15, 250),
    (7, 100),
)
PRAYER_STREAK_LOOKBACK_DAYS = 30
