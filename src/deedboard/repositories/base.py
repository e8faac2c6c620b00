"""Base repository providing Oracle access helpers.

Connection-level failures (lost sessions, exhausted pool, listener down)
surface as ``StoreUnavailable`` so callers can retry; constraint
violations and programming errors propagate unchanged.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

import oracledb

from deedboard.core.errors import StoreUnavailable
from deedboard.core.logging import redact_text

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 100  # Log queries slower than this

_TRANSIENT_ERRORS = (oracledb.OperationalError, oracledb.InterfaceError)


class BaseRepository:
    """Generic repository helpers using python-oracledb.

    Entity repositories extend this class and configure ``table_name`` and
    ``id_column``.
    """

    def __init__(
        self,
        pool: Any,
        table_name: str,
        id_column: str,
    ) -> None:
        self.pool = pool
        self.table_name = table_name
        self.id_column = id_column

    # ── helpers ──────────────────────────────────────────────────────

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        """Pooled connection; transient driver errors become ``StoreUnavailable``."""
        try:
            conn = self.pool.acquire()
        except oracledb.Error as exc:
            raise StoreUnavailable(f"Cannot acquire connection: {redact_text(str(exc))}") from exc
        try:
            yield conn
        except _TRANSIENT_ERRORS as exc:
            raise StoreUnavailable(f"{self.table_name}: {redact_text(str(exc))}") from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Connection whose work is committed on success and rolled back on error."""
        with self._connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                try:
                    conn.rollback()
                except oracledb.Error:
                    logger.warning("Rollback failed on %s", self.table_name, exc_info=True)
                raise

    @staticmethod
    def _log_query(sql: str, elapsed_ms: float) -> None:
        """Log query timing; warn if above slow-query threshold."""
        if elapsed_ms > SLOW_QUERY_THRESHOLD_MS:
            logger.warning("SLOW QUERY (%.1fms): %s", elapsed_ms, sql[:200])
        else:
            logger.debug("Query (%.1fms): %s", elapsed_ms, sql[:200])

    def _execute(self, cur: Any, sql: str, params: dict[str, Any] | None = None) -> None:
        start = time.perf_counter()
        cur.execute(sql, params or {})
        self._log_query(sql, (time.perf_counter() - start) * 1000)

    @staticmethod
    def _fetch_dicts(cur: Any) -> list[dict[str, Any]]:
        columns = [col[0].lower() for col in (cur.description or [])]
        return [
            BaseRepository._convert_row(dict(zip(columns, row, strict=True)))
            for row in cur.fetchall()
        ]

    @staticmethod
    def _convert_row(row: dict[str, Any]) -> dict[str, Any]:
        """Convert Oracle-specific types.

        * ``oracledb.LOB`` (CLOB/BLOB columns) → str / bytes
        * naive ``TIMESTAMP`` values → aware UTC datetimes
        """
        converted: dict[str, Any] = {}
        for k, v in row.items():
            if isinstance(v, oracledb.LOB):
                converted[k] = v.read()
            elif isinstance(v, datetime) and v.tzinfo is None:
                converted[k] = v.replace(tzinfo=UTC)
            else:
                converted[k] = v
        return converted

    @staticmethod
    def _utc(instant: datetime | None) -> datetime | None:
        """Bind value for a UTC ``TIMESTAMP`` column."""
        if instant is None:
            return None
        if instant.tzinfo is not None:
            instant = instant.astimezone(UTC)
        return instant.replace(tzinfo=None)

    # ── read ─────────────────────────────────────────────────────────

    def find_by_id(self, entity_id: str) -> dict[str, Any] | None:
        """Return a single row by primary key, or ``None``."""
        sql = f"SELECT * FROM {self.table_name} WHERE {self.id_column} = :id"
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(cur, sql, {"id": entity_id})
            rows = self._fetch_dicts(cur)
        return rows[0] if rows else None

    def find_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        """Return all rows matching a single field value."""
        sql = f"SELECT * FROM {self.table_name} WHERE {field} = :val"
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(cur, sql, {"val": value})
            return self._fetch_dicts(cur)
