"""Sentry reporting for the auth service.

Only faults are reported. Login rejections, rate limiting and validation
errors are ordinary outcomes and are dropped before sending. Events never
carry request bodies, cookies or authorization headers.
"""

import logging
from typing import Any
from urllib.parse import urlsplit

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from lexauth.utils.errors import AuthError

STRIPPED_HEADERS = frozenset({"authorization", "cookie", "x-forwarded-for"})

UNREPORTED_PATHS = ("/health", "/docs", "/openapi.json")


def init_sentry(
    dsn: str | None,
    environment: str = "development",
    release: str | None = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """Start the SDK; returns False (and does nothing) without a DSN."""
    if not dsn:
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        max_request_body_size="never",
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
    )
    return True


def _is_expected(exc_type: type | None) -> bool:
    if exc_type is None:
        return False
    if issubclass(exc_type, AuthError):
        return exc_type.status_code < 500
    return exc_type.__name__ == "RequestValidationError"


def _before_send(event: dict, hint: dict) -> dict | None:
    exc_info = hint.get("exc_info")
    if exc_info and _is_expected(exc_info[0]):
        return None

    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in STRIPPED_HEADERS:
                headers[name] = "[Filtered]"
    return event


def _before_send_transaction(event: dict, hint: dict) -> dict | None:
    path = urlsplit(event.get("request", {}).get("url", "")).path
    if path.startswith(UNREPORTED_PATHS):
        return None
    return event


def capture_security_error(
    error: Exception,
    component: str,
    subject_id: str | None = None,
    level: str = "error",
    extra: dict[str, Any] | None = None,
) -> str | None:
    """Report a fault inside a security component.

    Args:
        error: The exception raised by the component
        component: ``audit_log``, ``rate_limiter``, ...
        subject_id: Account id involved, if known
        level: Sentry level
        extra: Context for the event; must not contain credential material

    Returns:
        The Sentry event id, or None when the SDK is not initialised
    """
    with sentry_sdk.new_scope() as scope:
        scope.set_level(level)
        scope.set_tag("security_component", component)
        if subject_id:
            scope.set_user({"id": subject_id})
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)
