"""Logging setup: text or JSON output, correlation IDs, redaction of secrets."""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

# Keys whose values never reach the log output
SENSITIVE_KEY = re.compile(r"password|secret|token|dsn|api[_-]?key", re.IGNORECASE)

REDACTED = "***REDACTED***"

# Attributes every LogRecord carries; anything else came in via ``extra=``
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "correlation_id",
    "asctime",
}


def redact(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively replace values of sensitive keys."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if SENSITIVE_KEY.search(key):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = redact(value)
        else:
            result[key] = value
    return result


def redact_text(text: str) -> str:
    """Mask ``password=...`` style fragments in free text (e.g. DSNs in errors)."""
    return re.sub(
        r"((?:password|secret|token)[\s=:]+)\S+",
        r"\1" + REDACTED,
        text,
        flags=re.IGNORECASE,
    )


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields land under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            entry["correlation_id"] = correlation_id

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": redact_text(str(record.exc_info[1])),
            }

        context = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if context:
            entry["context"] = redact(context)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that prefixes the correlation ID when set."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s%(cid)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None)
        record.cid = f" [{cid}]" if cid else ""
        return redact_text(super().format(record))


class CorrelationFilter(logging.Filter):
    """Copy the context's correlation ID onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        from deedboard.core.context import get_correlation_id

        record.correlation_id = get_correlation_id()
        return True


def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Configure the root logger once for API or worker processes."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    handler.addFilter(CorrelationFilter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
