"""Database models."""

from lexauth.models.audit import SecurityEventRecord
from lexauth.models.base import Base, TimestampMixin, UUIDMixin
from lexauth.models.user import User, UserTwoFactor

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    # User
    "User",
    "UserTwoFactor",
    # Audit
    "SecurityEventRecord",
]
