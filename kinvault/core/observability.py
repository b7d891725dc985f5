"""
Logging setup and request correlation.

Every log line emitted while a request is being processed carries that
request's correlation id, so operators can match a generic
``INTERNAL_ERROR`` response to its stack trace.
"""

from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Correlation id of the request currently being processed, if any."""
    return _correlation_id.get()


def bind_correlation_id(correlation_id: str | None):
    """Bind a correlation id to the current context. Returns a reset token."""
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token) -> None:
    _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Attach ``correlation_id`` to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        for key in ("user_id", "error_code", "device_id", "resource"):
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure root logging. Called on startup via lifespan; repeat calls replace the handler."""
    for existing in list(logging.root.handlers):
        if getattr(existing, "_kinvault", False):
            logging.root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler._kinvault = True
    handler.addFilter(CorrelationIdFilter())
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s",
        ))
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
