"""User cohort repository: geographic scopes from the ``users`` table."""

from __future__ import annotations

from typing import Any

from deedboard.core.errors import LeaderboardError
from deedboard.repositories.base import BaseRepository
from deedboard.services.cohorts import CohortResolver

# scope type -> column
SCOPE_COLUMNS: dict[str, str] = {
    "country": "country_id",
    "division": "division_id",
    "district": "district_id",
}


class UserCohortRepository(BaseRepository, CohortResolver):
    """Oracle-backed ``CohortResolver``."""

    def __init__(self, pool: Any) -> None:
        super().__init__(pool=pool, table_name="users", id_column="user_id")

    def resolve(self, user_id: str) -> dict[str, Any] | None:
        row = self.find_by_id(user_id)
        if row is None:
            return None
        return {
            scope: str(row[column])
            for scope, column in SCOPE_COLUMNS.items()
            if row.get(column) is not None
        }

    def members(self, scope_type: str, scope_id: str) -> set[str]:
        column = SCOPE_COLUMNS.get(scope_type)
        if column is None:
            raise LeaderboardError(f"Invalid scope: {scope_type}")
        sql = f"SELECT user_id FROM {self.table_name} WHERE {column} = :scope_id"
        with self._connection() as conn, conn.cursor() as cur:
            self._execute(cur, sql, {"scope_id": scope_id})
            return {row["user_id"] for row in self._fetch_dicts(cur)}
