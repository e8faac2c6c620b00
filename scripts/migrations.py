"""Database migration scripts for Deedboard.

Run all migrations in order to set up the schema. Timestamps are stored as
UTC in plain ``TIMESTAMP`` columns.
"""

from __future__ import annotations

import logging

import oracledb

logger = logging.getLogger(__name__)


MIGRATION_001_USERS = """
CREATE TABLE users (
    user_id             VARCHAR2(64) PRIMARY KEY,
    display_name        VARCHAR2(255),
    country_id          VARCHAR2(32),
    division_id         VARCHAR2(32),
    district_id         VARCHAR2(32),
    created_at          TIMESTAMP DEFAULT SYS_EXTRACT_UTC(SYSTIMESTAMP)
)
"""

MIGRATION_001_DEEDS = """
CREATE TABLE predefined_good_deeds (
    deed_id             VARCHAR2(64) PRIMARY KEY,
    name                VARCHAR2(255) NOT NULL,
    category            VARCHAR2(50),
    points              NUMBER(10) NOT NULL,
    is_active           NUMBER(1) DEFAULT 1,
    CONSTRAINT chk_deed_points CHECK (points >= 0)
)
"""

MIGRATION_002_EVENTS = """
CREATE TABLE deed_events (
    event_id            VARCHAR2(64) PRIMARY KEY,
    user_id             VARCHAR2(64) NOT NULL,
    deed_id             VARCHAR2(64),
    point_value         NUMBER(10) NOT NULL,
    category            VARCHAR2(50),
    occurred_at         TIMESTAMP NOT NULL,
    recorded_at         TIMESTAMP NOT NULL,
    CONSTRAINT chk_event_points CHECK (point_value >= 0)
)
"""

MIGRATION_003_TOTALS = """
CREATE TABLE user_period_totals (
    user_id             VARCHAR2(64) NOT NULL,
    period_kind         VARCHAR2(10) NOT NULL
                        CHECK (period_kind IN ('day','week','month','all_time')),
    period_key          VARCHAR2(16) NOT NULL,
    total_points        NUMBER(12) DEFAULT 0 NOT NULL,
    qualified_at        TIMESTAMP,
    updated_at          TIMESTAMP,
    event_count         NUMBER(10) DEFAULT 0 NOT NULL,
    finalized           NUMBER(1) DEFAULT 0 NOT NULL,
    CONSTRAINT pk_user_period_totals PRIMARY KEY (user_id, period_kind, period_key)
)
"""

MIGRATION_003_CONTRIBUTIONS = """
CREATE TABLE period_contributions (
    event_id            VARCHAR2(64) NOT NULL,
    period_kind         VARCHAR2(10) NOT NULL,
    period_key          VARCHAR2(16) NOT NULL,
    user_id             VARCHAR2(64) NOT NULL,
    points              NUMBER(10) NOT NULL,
    occurred_at         TIMESTAMP NOT NULL,
    CONSTRAINT pk_period_contributions PRIMARY KEY (event_id, period_kind, period_key)
)
"""

MIGRATION_003_PERIOD_STATES = """
CREATE TABLE period_states (
    period_kind         VARCHAR2(10) NOT NULL,
    period_key          VARCHAR2(16) NOT NULL,
    finalized           NUMBER(1) DEFAULT 0 NOT NULL,
    changed_at          TIMESTAMP,
    CONSTRAINT pk_period_states PRIMARY KEY (period_kind, period_key)
)
"""

ALL_TABLE_DDLS = [
    ("users", MIGRATION_001_USERS),
    ("predefined_good_deeds", MIGRATION_001_DEEDS),
    ("deed_events", MIGRATION_002_EVENTS),
    ("user_period_totals", MIGRATION_003_TOTALS),
    ("period_contributions", MIGRATION_003_CONTRIBUTIONS),
    ("period_states", MIGRATION_003_PERIOD_STATES),
]

MIGRATION_004_INDEXES = [
    "CREATE INDEX idx_events_occurred ON deed_events(occurred_at)",
    "CREATE INDEX idx_events_user_occurred ON deed_events(user_id, occurred_at)",
    "CREATE INDEX idx_totals_period ON user_period_totals(period_kind, period_key)",
    "CREATE INDEX idx_contrib_period ON period_contributions(period_kind, period_key)",
    "CREATE INDEX idx_users_country ON users(country_id)",
    "CREATE INDEX idx_users_division ON users(division_id)",
    "CREATE INDEX idx_users_district ON users(district_id)",
]

# Tables in reverse order for dropping
DROP_ORDER = [name for name, _ in reversed(ALL_TABLE_DDLS)]


def table_exists(conn: oracledb.Connection, table_name: str) -> bool:
    """Check if a table exists in the current schema."""
    with conn.cursor() as cur:
        cur.execute(
            "SELECT COUNT(*) FROM user_tables WHERE table_name = :name",
            {"name": table_name.upper()},
        )
        row = cur.fetchone()
        return bool(row and row[0] > 0)


def run_migrations(conn: oracledb.Connection) -> list[str]:
    """Run all pending migrations. Returns list of actions taken."""
    actions: list[str] = []

    for table_name, ddl in ALL_TABLE_DDLS:
        if not table_exists(conn, table_name):
            with conn.cursor() as cur:
                cur.execute(ddl)
            actions.append(f"Created table: {table_name}")
            logger.info("Created table: %s", table_name)

    # Create indexes (ignore if already exists)
    for idx_sql in MIGRATION_004_INDEXES:
        try:
            with conn.cursor() as cur:
                cur.execute(idx_sql)
            idx_name = idx_sql.split("INDEX ")[1].split(" ON")[0]
            actions.append(f"Created index: {idx_name}")
        except oracledb.DatabaseError as e:
            error_obj = e.args[0]
            # ORA-00955: name already used; ORA-01408: column list already indexed
            if hasattr(error_obj, "code") and error_obj.code in (955, 1408):
                continue
            raise

    conn.commit()
    return actions


def drop_all_tables(conn: oracledb.Connection) -> list[str]:
    """Drop all tables (for reset). Returns list of actions taken."""
    actions: list[str] = []
    for table_name in DROP_ORDER:
        if table_exists(conn, table_name):
            with conn.cursor() as cur:
                cur.execute(f"DROP TABLE {table_name} CASCADE CONSTRAINTS PURGE")
            actions.append(f"Dropped table: {table_name}")
            logger.info("Dropped table: %s", table_name)
    conn.commit()
    return actions
