"""Execution context via contextvars: correlation IDs for requests and ticks."""

from __future__ import annotations

import uuid
from contextvars import ContextVar

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(value: str) -> None:
    """Set the correlation ID for the current request or worker run."""
    _correlation_id.set(value)


def get_correlation_id() -> str | None:
    """Get the correlation ID for the current context."""
    return _correlation_id.get()


def new_correlation_id(prefix: str = "") -> str:
    """Generate, set and return a fresh correlation ID."""
    value = f"{prefix}{uuid.uuid4().hex[:12]}"
    _correlation_id.set(value)
    return value
