"""Seed the database with synthetic users, deeds and deed events.

Users and predefined deeds are inserted directly; events go through the
engine so that totals and contributions are built exactly as in production.

Usage:
    python -m scripts.seed_data
    python -m scripts.seed_data --users 50 --events 500
"""

from __future__ import annotations

import argparse
import logging
import random
from datetime import UTC, datetime, timedelta
from typing import Any

import oracledb

from deedboard.core.config import Settings
from deedboard.core.logging import setup_logging
from deedboard.services.engine import build_engine
from tests.factories.data_factories import build_deed, build_event, build_user_batch

logger = logging.getLogger(__name__)

DEFAULT_DEEDS = [
    ("fajr", "Fajr prayer", 10, "prayer"),
    ("isha", "Isha prayer", 10, "prayer"),
    ("quran-page", "Read one page of Quran", 15, "quran"),
    ("sadaqah", "Give charity", 25, "charity"),
    ("parents-call", "Call your parents", 20, "family"),
    ("morning-dhikr", "Morning remembrance", 5, "dhikr"),
]


def _connect(settings: Settings) -> oracledb.Connection:
    """Connect to Oracle with the configured credentials."""
    return oracledb.connect(
        user=settings.oracle_user,
        password=settings.oracle_password,
        dsn=settings.oracle_dsn,
    )


def _insert_row(cur: oracledb.Cursor, table: str, data: dict[str, Any]) -> bool:
    """Insert a single row; returns False when Oracle rejects it."""
    columns = ", ".join(data.keys())
    placeholders = ", ".join(f":{k}" for k in data.keys())
    sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
    try:
        cur.execute(sql, data)
    except oracledb.Error as e:
        logger.warning("Insert into %s failed: %s", table, e)
        return False
    return True


def seed_database(
    settings: Settings | None = None,
    user_count: int = 25,
    event_count: int = 300,
) -> dict[str, int]:
    """Generate and insert synthetic data. Returns counts per kind."""
    settings = settings or Settings()
    conn = _connect(settings)
    logger.info("Connected to database, starting seed...")

    counts = {"users": 0, "deeds": 0, "events": 0, "pending": 0}
    try:
        with conn.cursor() as cur:
            # ── 1. Users ──
            users = build_user_batch(user_count)
            for u in users:
                row = {k: v for k, v in u.items() if k != "created_at"}
                counts["users"] += _insert_row(cur, "users", row)
            logger.info("Seeded %d users", counts["users"])

            # ── 2. Predefined deeds ──
            deeds = [
                build_deed(deed_id=deed_id, name=name, points=points, category=category)
                for deed_id, name, points, category in DEFAULT_DEEDS
            ]
            for d in deeds:
                row = {
                    "deed_id": d.deed_id,
                    "name": d.name,
                    "category": d.category,
                    "points": d.points,
                    "is_active": 1,
                }
                counts["deeds"] += _insert_row(cur, "predefined_good_deeds", row)
            logger.info("Seeded %d deeds", counts["deeds"])
        conn.commit()
    finally:
        conn.close()

    # ── 3. Events, through the engine ──
    engine = build_engine(settings, backend="oracle")
    now = datetime.now(UTC)
    user_ids = [u["user_id"] for u in users]
    for _ in range(event_count):
        deed = random.choice(deeds)
        occurred = now - timedelta(minutes=random.randint(1, 60 * 24 * 45))
        event = build_event(
            user_id=random.choice(user_ids),
            deed_id=deed.deed_id,
            point_value=deed.points,
            category=deed.category,
            occurred_at=occurred,
            recorded_at=occurred,
        )
        outcome = engine.scheduler.on_event(event)
        counts["pending" if outcome.pending else "events"] += 1
    logger.info("Seeded %d events (%d pending)", counts["events"], counts["pending"])

    # Finalize every period that has already ended.
    engine.scheduler.on_tick()
    logger.info("Seed complete!")
    return counts


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Seed Deedboard with synthetic data")
    parser.add_argument("--users", type=int, default=25)
    parser.add_argument("--events", type=int, default=300)
    args = parser.parse_args(argv)

    settings = Settings()
    setup_logging(level=settings.log_level, log_format=settings.log_format)
    seed_database(settings, user_count=args.users, event_count=args.events)


if __name__ == "__main__":
    main()
