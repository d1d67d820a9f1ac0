"""Security audit log.

Append-only record of authentication-relevant events. Events go to a
pluggable sink:

- Database (``security_events`` table) - primary record
- Redis Stream - real-time audit trail for monitoring
- In-memory - tests

Every event is also emitted as a structured log line. A sink failure is
logged and reported to Sentry but never aborts the auth operation that
produced the event.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from lexauth.logging_config import get_logger
from lexauth.middleware.sentry import capture_security_error
from lexauth.models.audit import SecurityEventRecord
from lexauth.utils.json_utils import json_dumps

logger = get_logger(__name__)

UNKNOWN_SUBJECT = "unknown"

# Metadata keys that must never reach the audit trail
SENSITIVE_METADATA_KEYS = frozenset({
    "password",
    "password_hash",
    "secret",
    "pending_secret",
    "code",
    "submitted_code",
    "backup_code",
    "backup_codes",
    "token",
    "access_token",
    "challenge_id",
})


class SecurityEventKind(str, Enum):
    """Security event types."""

    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    BACKUP_CODE_USED = "BACKUP_CODE_USED"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    # Diagnostic: counter store unavailable, limiter admitted without counting
    RATE_LIMIT_DEGRADED = "RATE_LIMIT_DEGRADED"


@dataclass
class RequestContext:
    """Per-request metadata carried into services."""

    ip_address: str | None = None
    user_agent: str | None = None
    trace_id: str | None = None
    subject_id: str | None = None
    locale: str | None = None


@dataclass(frozen=True)
class SecurityEvent:
    """A single audit entry."""

    kind: SecurityEventKind
    subject_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ip_address: str | None = None
    user_agent: str | None = None
    trace_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "subject_id": self.subject_id,
            "metadata": self.metadata,
            "occurred_at": self.occurred_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "trace_id": self.trace_id,
        }


def scrub_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Drop credential material from event metadata."""
    if not metadata:
        return {}
    return {
        key: value
        for key, value in metadata.items()
        if key.lower() not in SENSITIVE_METADATA_KEYS
    }


class AuditSink(Protocol):
    """Destination for security events."""

    async def append(self, event: SecurityEvent) -> None:
        ...


class InMemoryAuditSink:
    """List-backed sink for tests and local development."""

    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    async def append(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: SecurityEventKind) -> list[SecurityEvent]:
        return [event for event in self.events if event.kind == kind]

    def kinds(self) -> list[SecurityEventKind]:
        return [event.kind for event in self.events]


class SqlAuditSink:
    """Writes events to the ``security_events`` table.

    Each event is committed in its own session so an audit row survives a
    rollback of the request transaction that produced it.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def append(self, event: SecurityEvent) -> None:
        async with self._session_factory() as session:
            session.add(
                SecurityEventRecord(
                    kind=event.kind.value,
                    subject_id=event.subject_id,
                    event_metadata=event.metadata,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    trace_id=event.trace_id,
                    occurred_at=event.occurred_at,
                )
            )
            await session.commit()


class RedisStreamAuditSink:
    """Appends events to a capped Redis Stream."""

    STREAM_KEY = "audit:security"

    def __init__(self, redis: Redis, max_len: int = 100_000):
        self._redis = redis
        self._max_len = max_len

    async def append(self, event: SecurityEvent) -> None:
        # Flat string fields for XADD
        flat_entry = {
            key: json_dumps(value) if isinstance(value, dict) else str(value or "")
            for key, value in event.to_dict().items()
        }
        await self._redis.xadd(
            self.STREAM_KEY,
            flat_entry,
            maxlen=self._max_len,
            approximate=True,
        )


class SecurityAuditLog:
    """Records security events through a sink."""

    def __init__(self, sink: AuditSink):
        self.sink = sink

    async def record(
        self,
        kind: SecurityEventKind,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> SecurityEvent:
        """Append a security event.

        Args:
            kind: Event type
            subject_id: Account id, or None for attempts against no known account
            metadata: Event details; credential material is dropped
            context: Request metadata (IP, user agent, trace id)

        Returns:
            The event that was built, whether or not the sink accepted it
        """
        context = context or RequestContext()
        event = SecurityEvent(
            kind=kind,
            subject_id=subject_id or UNKNOWN_SUBJECT,
            metadata=scrub_metadata(metadata),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            trace_id=context.trace_id,
        )

        logger.info(
            "security_event",
            kind=event.kind.value,
            subject_id=event.subject_id,
            ip_address=event.ip_address,
            event_metadata=event.metadata,
        )

        try:
            await self.sink.append(event)
        except Exception as e:
            logger.error(
                "audit_write_failed",
                kind=event.kind.value,
                subject_id=event.subject_id,
                error=type(e).__name__,
            )
            capture_security_error(
                e,
                component="audit_log",
                subject_id=None if event.subject_id == UNKNOWN_SUBJECT else event.subject_id,
                extra={"event_kind": event.kind.value},
            )

        return event
