"""Oracle connection pool management."""

from __future__ import annotations

import logging

import oracledb

from deedboard.core.config import Settings

logger = logging.getLogger(__name__)

# Module-level pool reference
_pool: oracledb.ConnectionPool | None = None

SESSION_SETUP_SQL = "ALTER SESSION SET TIME_ZONE = 'UTC'"


def _init_session(connection: oracledb.Connection, requested_tag: str | None) -> None:
    # Timestamps are stored as naive UTC; SYSTIMESTAMP defaults must agree.
    with connection.cursor() as cur:
        cur.execute(SESSION_SETUP_SQL)


def init_pool(settings: Settings) -> oracledb.ConnectionPool:
    """Create (once) and return the shared Oracle pool.

    The API lifespan and the worker CLI share this pool, so a second call
    returns the existing one.
    """
    global _pool
    if _pool is not None:
        return _pool

    logger.info("Creating Oracle connection pool: %s", settings.oracle_dsn)
    _pool = oracledb.create_pool(
        user=settings.oracle_user,
        password=settings.oracle_password,
        dsn=settings.oracle_dsn,
        min=settings.oracle_pool_min,
        max=settings.oracle_pool_max,
        increment=settings.oracle_pool_increment,
        session_callback=_init_session,
    )
    logger.info(
        "Oracle pool ready (min=%d, max=%d, session tz=UTC)",
        settings.oracle_pool_min,
        settings.oracle_pool_max,
    )
    return _pool


def close_pool() -> None:
    """Close the shared pool, if one was created."""
    global _pool
    if _pool is None:
        return
    _pool.close(force=True)
    _pool = None
    logger.info("Oracle connection pool closed")
