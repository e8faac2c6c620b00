"""Deed catalog repository: the ``predefined_good_deeds`` table."""

from __future__ import annotations

from typing import Any

from deedboard.repositories.base import BaseRepository
from deedboard.services.points import PredefinedDeed


class DeedCatalogRepository(BaseRepository):
    """Read access to predefined deeds and their point values."""

    def __init__(self, pool: Any) -> None:
        super().__init__(pool=pool, table_name="predefined_good_deeds", id_column="deed_id")

    def get(self, deed_id: str) -> PredefinedDeed | None:
        row = self.find_by_id(deed_id)
        if row is None or not row.get("is_active", 1):
            return None
        return _to_deed(row)

    def list_active(self) -> list[PredefinedDeed]:
        return sorted(
            (_to_deed(r) for r in self.find_by_field("is_active", 1)),
            key=lambda d: d.deed_id,
        )


def _to_deed(row: dict[str, Any]) -> PredefinedDeed:
    return PredefinedDeed(
        deed_id=str(row["deed_id"]),
        name=row["name"],
        points=int(row["points"]),
        category=row.get("category"),
    )
