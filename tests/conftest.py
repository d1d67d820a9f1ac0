"""Shared fixtures.

Settings are read from the environment at import time, so test values are set
before any ``lexauth`` module is imported.
"""

import os

os.environ.setdefault("JWT_SECRET_KEY", "k3Yq8vN2pL5xR7tW9zB4cF6hJ1mD0sGa")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEFAULT_LOCALE", "hr")

from dataclasses import dataclass, field  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402

from lexauth.config import get_settings  # noqa: E402
from lexauth.services.audit import (  # noqa: E402
    InMemoryAuditSink,
    RequestContext,
    SecurityAuditLog,
)
from lexauth.services.backup_codes import BackupCodeVault  # noqa: E402
from lexauth.services.challenges import InMemoryChallengeStore  # noqa: E402
from lexauth.services.credentials import (  # noqa: E402
    AccountCredential,
    InMemoryCredentialStore,
    TwoFactorState,
)
from lexauth.services.enrollment import TwoFactorEnrollmentService  # noqa: E402
from lexauth.services.login import LoginService  # noqa: E402
from lexauth.services.rate_limiter import (  # noqa: E402
    InMemoryCounterStore,
    RateLimiter,
    policies_from_settings,
)
from lexauth.services.totp import TOTPEngine  # noqa: E402
from lexauth.utils.security import hash_password  # noqa: E402

DEFAULT_PASSWORD = "Tajna-lozinka-2024"


@dataclass
class FakeClock:
    """Controllable clock for services."""

    now: datetime = field(
        default_factory=lambda: datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
    )

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def totp_engine():
    return TOTPEngine()


@pytest.fixture
def vault():
    return BackupCodeVault()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def audit_log(audit_sink):
    return SecurityAuditLog(audit_sink)


@pytest.fixture
def counter_store():
    return InMemoryCounterStore()


@pytest.fixture
def rate_limiter(counter_store, audit_log, settings):
    return RateLimiter(counter_store, policies=policies_from_settings(settings), audit_log=audit_log)


@pytest.fixture
def challenge_store():
    return InMemoryChallengeStore()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def context():
    return RequestContext(
        ip_address="203.0.113.10",
        user_agent="pytest",
        trace_id="trace-test",
    )


@pytest.fixture
def make_account(credential_store, totp_engine, vault):
    """Factory adding an account to the in-memory store.

    Returns (account, backup_codes); backup_codes is empty without 2FA.
    """

    def _make(
        email: str = "ana.horvat@odvjetnik.hr",
        password: str | None = DEFAULT_PASSWORD,
        two_factor: bool = False,
        is_active: bool = True,
        organization_name: str | None = "Odvjetnički ured Horvat",
    ) -> tuple[AccountCredential, list[str]]:
        codes: list[str] = []
        state = TwoFactorState()
        if two_factor:
            codes, backup_set = vault.generate()
            state = TwoFactorState(
                enabled=True,
                secret=totp_engine.generate_secret(),
                verified_at=datetime(2024, 1, 15, tzinfo=timezone.utc),
                backup_codes=backup_set,
            )
        account = AccountCredential(
            account_id=str(uuid4()),
            email=email,
            organization_id=str(uuid4()),
            organization_name=organization_name,
            password_hash=hash_password(password) if password else None,
            is_active=is_active,
            two_factor=state,
        )
        credential_store.add(account)
        return account, codes

    return _make


@pytest.fixture
def login_service(credential_store, challenge_store, rate_limiter, audit_log, totp_engine, vault, settings, clock):
    return LoginService(
        credentials=credential_store,
        challenges=challenge_store,
        rate_limiter=rate_limiter,
        audit_log=audit_log,
        totp=totp_engine,
        vault=vault,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def enrollment_service(credential_store, audit_log, totp_engine, vault, settings, clock):
    return TwoFactorEnrollmentService(
        credentials=credential_store,
        audit_log=audit_log,
        totp=totp_engine,
        vault=vault,
        settings=settings,
        clock=clock,
    )
