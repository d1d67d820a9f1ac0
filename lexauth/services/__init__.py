"""Business logic services."""

from lexauth.services.audit import (
    InMemoryAuditSink,
    RedisStreamAuditSink,
    RequestContext,
    SecurityAuditLog,
    SecurityEvent,
    SecurityEventKind,
    SqlAuditSink,
)
from lexauth.services.backup_codes import BackupCodeSet, BackupCodeVault
from lexauth.services.challenges import (
    InMemoryChallengeStore,
    LoginChallenge,
    RedisChallengeStore,
)
from lexauth.services.credentials import (
    AccountCredential,
    InMemoryCredentialStore,
    SqlCredentialStore,
    TwoFactorState,
)
from lexauth.services.enrollment import EnrollmentSetup, TwoFactorEnrollmentService, TwoFactorStatus
from lexauth.services.login import LoginResult, LoginService, LoginState, LoginStatus
from lexauth.services.rate_limiter import (
    ActionClass,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitResult,
    RedisCounterStore,
)
from lexauth.services.totp import TOTPEngine

__all__ = [
    "AccountCredential",
    "ActionClass",
    "BackupCodeSet",
    "BackupCodeVault",
    "EnrollmentSetup",
    "InMemoryAuditSink",
    "InMemoryChallengeStore",
    "InMemoryCounterStore",
    "InMemoryCredentialStore",
    "LoginChallenge",
    "LoginResult",
    "LoginService",
    "LoginState",
    "LoginStatus",
    "RateLimitResult",
    "RateLimiter",
    "RedisChallengeStore",
    "RedisCounterStore",
    "RedisStreamAuditSink",
    "RequestContext",
    "SecurityAuditLog",
    "SecurityEvent",
    "SecurityEventKind",
    "SqlAuditSink",
    "SqlCredentialStore",
    "TOTPEngine",
    "TwoFactorEnrollmentService",
    "TwoFactorState",
    "TwoFactorStatus",
]
