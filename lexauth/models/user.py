"""User credential and two-factor models."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lexauth.models.base import Base, TimestampMixin, UUIDMixin


class User(Base, UUIDMixin, TimestampMixin):
    """User account model (authentication root)."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    # Accounts invited but never activated have no password yet
    password_hash: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Tenant
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        nullable=False,
        index=True,
    )
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    two_factor: Mapped["UserTwoFactor | None"] = relationship(
        "UserTwoFactor",
        back_populates="user",
        cascade="all, delete-orphan",
        uselist=False,
    )

    def __repr__(self) -> str:
        return f"<User {self.id[:8]}...>"


class UserTwoFactor(Base, UUIDMixin):
    """User two-factor authentication configuration.

    Stores the TOTP secret and hashed backup codes. While enrollment is in
    progress the secret and codes live in the ``pending_*`` columns; they are
    moved to ``secret``/``backup_codes`` only after a correct code is verified.
    ``version`` is bumped on every change to the backup codes and guards
    concurrent consumption (compare-and-set).
    """

    __tablename__ = "user_two_factor"

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,  # One 2FA config per user
        index=True,
    )

    secret: Mapped[str | None] = mapped_column(
        String(256),
        nullable=True,
        comment="Active TOTP secret (Base32)",
    )
    pending_secret: Mapped[str | None] = mapped_column(
        String(256),
        nullable=True,
        comment="TOTP secret awaiting enrollment verification",
    )

    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # JSON arrays of {"hash": sha256 hex, "consumed_at": iso timestamp | null}
    backup_codes: Mapped[list | None] = mapped_column(
        JSONB,
        nullable=True,
    )
    pending_backup_codes: Mapped[list | None] = mapped_column(
        JSONB,
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_backup_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    user: Mapped["User"] = relationship("User", back_populates="two_factor")

    def __repr__(self) -> str:
        return f"<UserTwoFactor user={self.user_id[:8]}... enabled={self.is_enabled}>"
