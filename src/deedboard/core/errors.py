"""Error taxonomy for aggregation and ranking."""

from __future__ import annotations


class DeedboardError(Exception):
    """Base service error with HTTP status hint."""

    status_code = 400
    title = "Bad Request"

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(detail)


class InvalidEvent(DeedboardError):
    """Event rejected before aggregation (bad points, unknown user, ...)."""

    status_code = 400
    title = "Invalid Event"


class StoreUnavailable(DeedboardError):
    """Transient persistence failure; safe to retry."""

    status_code = 503
    title = "Store Unavailable"


class RecomputeInterrupted(DeedboardError):
    """Recompute was cancelled or crashed; its shadow totals were discarded."""

    status_code = 409
    title = "Recompute Interrupted"

    def __init__(self, detail: str, cancelled: bool = False) -> None:
        self.cancelled = cancelled
        super().__init__(detail)


class LeaderboardError(DeedboardError):
    """Invalid leaderboard query."""

    title = "Invalid Leaderboard Query"


class ClockSkew:
    """Flag attached to an applied event that landed in a finalized period.

    Not raised: the event is accepted and the period is reopened.
    """

    __slots__ = ("event_id", "user_id", "period_kind", "period_key")

    def __init__(self, event_id: str, user_id: str, period_kind: str, period_key: str) -> None:
        self.event_id = event_id
        self.user_id = user_id
        self.period_kind = period_kind
        self.period_key = period_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClockSkew):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return (
            f"ClockSkew(event_id={self.event_id!r}, user_id={self.user_id!r}, "
            f"period={self.period_kind}:{self.period_key})"
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "period_kind": self.period_kind,
            "period_key": self.period_key,
        }
