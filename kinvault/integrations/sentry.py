# =============================================================================
# Sentry Error Tracking Integration
# =============================================================================
#
# Setup:
#   1. Create a Python project at sentry.io
#   2. Copy its DSN to .env: SENTRY_DSN=https://...@sentry.io/...
#
# Usage:
#   init_sentry() runs in the app lifespan (kinvault/api/app.py); the request
#   pipeline reports unexpected errors through capture_exception().
#
# Events never carry request bodies, tokens or device identifiers: family
# records are health data.
#
# =============================================================================

from __future__ import annotations

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from kinvault.auth.errors import GuardError
from kinvault.config import Settings, get_settings

logger = logging.getLogger(__name__)

SCRUBBED_HEADERS = frozenset({"authorization", "cookie", "x-device-id", "x-device-info"})
IGNORED_TRANSACTIONS = frozenset({"/healthz", "/health", "/ready"})
FILTERED = "[Filtered]"


def init_sentry(settings: Settings | None = None) -> bool:
    """
    Initialize Sentry error tracking.

    Returns True if initialized, False if no DSN is configured.
    """
    settings = settings or get_settings()

    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        before_send=filter_event,
        before_send_transaction=filter_transaction,
    )

    logger.info(f"Sentry initialized for {settings.environment}")
    return True


def filter_event(event: dict, hint: dict) -> dict | None:
    """Drop expected guard failures; strip bodies and identifying headers."""
    exc_info = hint.get("exc_info")
    if exc_info:
        error = exc_info[1]
        if isinstance(error, GuardError) and error.status_code < 500:
            return None

    request = event.get("request")
    if request:
        request.pop("data", None)
        headers = request.get("headers") or {}
        for key in list(headers):
            if key.lower() in SCRUBBED_HEADERS:
                headers[key] = FILTERED

    return event


def filter_transaction(event: dict, hint: dict) -> dict | None:
    if event.get("transaction", "") in IGNORED_TRANSACTIONS:
        return None
    return event


def capture_exception(error: Exception, **context) -> str | None:
    """
    Report an unexpected error, tagged with the request's correlation id.

    Returns the event ID if captured, None when Sentry is not running.
    """
    if not sentry_sdk.is_initialized():
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        if "correlation_id" in context:
            scope.set_tag("correlation_id", context["correlation_id"])
        return sentry_sdk.capture_exception(error)


def set_user(user_id: str) -> None:
    """Attach the caller's account id (never email) to error reports."""
    if sentry_sdk.is_initialized():
        sentry_sdk.set_user({"id": user_id})
