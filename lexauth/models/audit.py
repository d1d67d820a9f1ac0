"""Security event model."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from lexauth.models.base import Base, UUIDMixin


class SecurityEventRecord(Base, UUIDMixin):
    """Append-only security audit record.

    Rows are only ever inserted; the auth core never updates or deletes them.
    """

    __tablename__ = "security_events"

    kind: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        index=True,
    )
    """
    Kinds:
    - LOGIN, LOGIN_FAILED
    - TWO_FACTOR_ENABLED, TWO_FACTOR_DISABLED
    - BACKUP_CODE_USED, BACKUP_CODES_REGENERATED
    - RATE_LIMIT_EXCEEDED, RATE_LIMIT_DEGRADED
    - VALIDATION_FAILED
    """

    # Account id, or "unknown" for attempts against no known account
    subject_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    event_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<SecurityEventRecord {self.kind} subject={self.subject_id[:8]}...>"
