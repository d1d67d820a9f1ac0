"""structlog setup for the auth service.

Every log line carries the request's ``trace_id`` (bound per request in
``lexauth.main``) and, once known, the ``subject_id``. Credential material
never reaches the log output: the ``redact_credentials`` processor masks it
even when a call site passes it by mistake.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

REDACTED = "[REDACTED]"

REDACTED_FIELDS = frozenset({
    "password",
    "password_hash",
    "secret",
    "pending_secret",
    "code",
    "backup_code",
    "backup_codes",
    "token",
    "access_token",
    "authorization",
})

# Loggers that are chatty at INFO and add nothing to an auth trail
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "passlib")


def redact_credentials(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in list(event_dict):
        if key.lower() in REDACTED_FIELDS:
            event_dict[key] = REDACTED
    return event_dict


def _renderer(as_json: bool) -> Processor:
    if as_json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    app_env: str = "development",
) -> None:
    """Route structlog and stdlib logging through one formatter.

    Production always renders JSON; elsewhere ``json_logs`` decides.
    """
    as_json = json_logs or app_env == "production"

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
        structlog.processors.format_exc_info if as_json else structlog.dev.set_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(as_json),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach request-scoped fields (trace_id, subject_id) to later log calls."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
