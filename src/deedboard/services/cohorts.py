"""Cohort lookup: which geographic scopes a user belongs to."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from deedboard.core.constants import SCOPE_GLOBAL, SCOPE_TYPES
from deedboard.core.errors import LeaderboardError


@dataclass(frozen=True)
class CohortFilter:
    """Restricts a leaderboard to users sharing one scope id."""

    scope_type: str = SCOPE_GLOBAL
    scope_id: str | None = None

    def __post_init__(self) -> None:
        if self.scope_type not in SCOPE_TYPES:
            raise LeaderboardError(f"Invalid scope: {self.scope_type}")
        if self.scope_type != SCOPE_GLOBAL and not self.scope_id:
            raise LeaderboardError(f"Scope '{self.scope_type}' requires a scope id")
        if self.scope_id is not None:
            object.__setattr__(self, "scope_id", str(self.scope_id))

    @property
    def is_global(self) -> bool:
        return self.scope_type == SCOPE_GLOBAL

    @property
    def label(self) -> str:
        """Cohort name carried on leaderboard entries and cache keys."""
        if self.is_global:
            return SCOPE_GLOBAL
        return f"{self.scope_type}:{self.scope_id}"


GLOBAL = CohortFilter()


class CohortResolver(ABC):
    """Read-only lookup of a user's cohort identifiers."""

    @abstractmethod
    def resolve(self, user_id: str) -> dict[str, Any] | None:
        """Return e.g. ``{"country": "1", "division": "3", "district": "47"}``.

        ``None`` means the user is unknown.
        """

    @abstractmethod
    def members(self, scope_type: str, scope_id: str) -> set[str]:
        """Ids of every user registered in one country, division or district."""

    def exists(self, user_id: str) -> bool:
        return self.resolve(user_id) is not None


class StaticCohortResolver(CohortResolver):
    """Cohorts from a plain mapping; used in tests and memory-backed setups.

    With ``allow_unknown`` every user resolves (to no cohorts) so that
    ingestion does not require a user registry.
    """

    def __init__(
        self,
        cohorts: dict[str, dict[str, Any]] | None = None,
        allow_unknown: bool = False,
    ) -> None:
        self._cohorts = dict(cohorts or {})
        self.allow_unknown = allow_unknown

    def register(self, user_id: str, **scopes: Any) -> None:
        self._cohorts[user_id] = {k: str(v) for k, v in scopes.items() if v is not None}

    def resolve(self, user_id: str) -> dict[str, Any] | None:
        found = self._cohorts.get(user_id)
        if found is None and self.allow_unknown:
            return {}
        return found

    def members(self, scope_type: str, scope_id: str) -> set[str]:
        return {
            user_id
            for user_id, scopes in self._cohorts.items()
            if scopes.get(scope_type) is not None and str(scopes[scope_type]) == str(scope_id)
        }
