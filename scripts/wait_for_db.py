"""Wait for Oracle to accept connections, then run migrations.

Usage:
    python -m scripts.wait_for_db [--timeout 300] [--interval 2]
"""

from __future__ import annotations

import argparse
import logging
import time

import oracledb

from deedboard.core.config import get_settings
from deedboard.core.logging import redact_text, setup_logging

logger = logging.getLogger(__name__)

MAX_INTERVAL_SECONDS = 30


def wait_for_db(
    dsn: str,
    user: str,
    password: str,
    timeout: int = 300,
    interval: float = 2,
) -> oracledb.Connection:
    """Block until Oracle accepts connections, doubling the wait between tries."""
    deadline = time.monotonic() + timeout
    attempt = 0
    while time.monotonic() < deadline:
        attempt += 1
        try:
            conn = oracledb.connect(user=user, password=password, dsn=dsn)
            logger.info("Connected to Oracle on attempt %d", attempt)
            return conn
        except oracledb.Error as exc:
            logger.info(
                "Attempt %d failed (%s), retrying in %.0fs...",
                attempt,
                redact_text(str(exc)),
                interval,
            )
            time.sleep(interval)
            interval = min(interval * 2, MAX_INTERVAL_SECONDS)

    raise TimeoutError(f"Could not connect to Oracle at {dsn} within {timeout}s")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Wait for Oracle and migrate")
    parser.add_argument("--timeout", type=int, default=300)
    parser.add_argument("--interval", type=float, default=2)
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    conn = wait_for_db(
        settings.oracle_dsn,
        settings.oracle_user,
        settings.oracle_password,
        timeout=args.timeout,
        interval=args.interval,
    )

    from scripts.migrations import run_migrations

    try:
        actions = run_migrations(conn)
    finally:
        conn.close()

    if actions:
        logger.info("Migrations applied: %s", actions)
    else:
        logger.info("No pending migrations")
    logger.info("Database ready!")


if __name__ == "__main__":
    main()
