"""Credential store.

Read and write access to account credentials and two-factor state. The SQL
store backs production; the in-memory store backs tests and local runs. Both
implement the same compare-and-set on the backup code ``version`` so a
backup code can be consumed only once under concurrency.
"""

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterator, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from lexauth.logging_config import get_logger
from lexauth.models.user import User, UserTwoFactor
from lexauth.services.backup_codes import BackupCodeSet, BackupCodeVault
from lexauth.utils.errors import StorageUnavailable

logger = get_logger(__name__)

# Compare-and-set retries before a backup code consumption gives up
MAX_SWAP_RETRIES = 3


@dataclass(frozen=True)
class TwoFactorState:
    """Two-factor configuration of one account."""

    enabled: bool = False
    secret: str | None = None
    pending_secret: str | None = None
    verified_at: datetime | None = None
    backup_codes: BackupCodeSet = field(default_factory=BackupCodeSet)
    pending_backup_codes: BackupCodeSet | None = None


@dataclass(frozen=True)
class AccountCredential:
    """Credential view of an account. Never logged or returned to clients."""

    account_id: str
    email: str
    organization_id: str | None = None
    organization_name: str | None = None
    password_hash: str | None = None
    is_active: bool = True
    two_factor: TwoFactorState = field(default_factory=TwoFactorState)

    @property
    def two_factor_enabled(self) -> bool:
        return self.two_factor.enabled and bool(self.two_factor.secret)

    @property
    def two_factor_state_invalid(self) -> bool:
        """Enabled without a secret: the stored row is corrupt."""
        return self.two_factor.enabled and not self.two_factor.secret

    def __repr__(self) -> str:
        return f"<AccountCredential {self.account_id[:8]}...>"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class CredentialStore(Protocol):
    """Account credential persistence."""

    async def get_by_email(self, email: str) -> AccountCredential | None:
        ...

    async def get_by_id(self, account_id: str) -> AccountCredential | None:
        ...

    async def save_pending_two_factor(
        self, account_id: str, secret: str, backup_codes: BackupCodeSet
    ) -> None:
        """Store an enrollment awaiting verification."""
        ...

    async def enable_two_factor(self, account_id: str, verified_at: datetime) -> None:
        """Promote the pending secret and backup codes to active."""
        ...

    async def swap_backup_codes(
        self,
        account_id: str,
        expected_version: int,
        backup_codes: BackupCodeSet,
        used_at: datetime,
    ) -> bool:
        """Replace the set only if its version is still ``expected_version``."""
        ...

    async def replace_backup_codes(self, account_id: str, backup_codes: BackupCodeSet) -> int:
        """Unconditionally replace the set; returns the new version."""
        ...

    async def disable_two_factor(self, account_id: str) -> None:
        """Clear the secret, pending enrollment and backup codes."""
        ...


async def consume_backup_code(
    store: CredentialStore,
    vault: BackupCodeVault,
    account_id: str,
    code: str,
    now: datetime,
) -> BackupCodeSet | None:
    """Verify a backup code and persist its consumption.

    On a version conflict the set is re-read and the code re-verified, so
    whoever loses a race sees the code as already consumed.

    Returns:
        The updated set, or None if the code did not verify
    """
    for _ in range(MAX_SWAP_RETRIES):
        account = await store.get_by_id(account_id)
        if account is None or not account.two_factor_enabled:
            return None

        current = account.two_factor.backup_codes
        ok, updated = vault.verify_and_consume(current, code, now)
        if not ok:
            return None

        if await store.swap_backup_codes(account_id, current.version, updated, now):
            return updated

        logger.info("backup_code_swap_conflict", account_id=account_id)

    logger.warning("backup_code_swap_gave_up", account_id=account_id)
    return None


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Turn database failures into ``StorageUnavailable``."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(
            "credential_store_unavailable",
            operation=operation,
            error=type(e).__name__,
        )
        raise StorageUnavailable() from e


def _to_credential(user: User) -> AccountCredential:
    row = user.two_factor
    two_factor = TwoFactorState()
    if row is not None:
        two_factor = TwoFactorState(
            enabled=row.is_enabled,
            secret=row.secret,
            pending_secret=row.pending_secret,
            verified_at=row.verified_at,
            backup_codes=BackupCodeSet.from_list(row.backup_codes, version=row.version),
            pending_backup_codes=(
                BackupCodeSet.from_list(row.pending_backup_codes)
                if row.pending_backup_codes is not None
                else None
            ),
        )
    return AccountCredential(
        account_id=user.id,
        email=user.email,
        organization_id=user.organization_id,
        organization_name=user.organization_name,
        password_hash=user.password_hash,
        is_active=user.is_active,
        two_factor=two_factor,
    )


class SqlCredentialStore:
    """Credential store over the request's database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_user(self, *criteria) -> User | None:
        query = (
            select(User)
            .options(selectinload(User.two_factor))
            .where(*criteria)
            # Re-read after a compare-and-set conflict must see fresh rows
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _load_two_factor(self, account_id: str) -> UserTwoFactor | None:
        result = await self.db.execute(
            select(UserTwoFactor)
            .where(UserTwoFactor.user_id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> AccountCredential | None:
        with storage_errors("get_by_email"):
            user = await self._load_user(func.lower(User.email) == normalize_email(email))
        return _to_credential(user) if user else None

    async def get_by_id(self, account_id: str) -> AccountCredential | None:
        with storage_errors("get_by_id"):
            user = await self._load_user(User.id == account_id)
        return _to_credential(user) if user else None

    async def save_pending_two_factor(
        self, account_id: str, secret: str, backup_codes: BackupCodeSet
    ) -> None:
        with storage_errors("save_pending_two_factor"):
            row = await self._load_two_factor(account_id)
            if row is None:
                row = UserTwoFactor(user_id=account_id, is_enabled=False, version=0)
                self.db.add(row)
            row.pending_secret = secret
            row.pending_backup_codes = backup_codes.to_list()
            await self.db.flush()

    async def enable_two_factor(self, account_id: str, verified_at: datetime) -> None:
        with storage_errors("enable_two_factor"):
            row = await self._load_two_factor(account_id)
            if row is None or row.pending_secret is None:
                return
            row.secret = row.pending_secret
            row.backup_codes = row.pending_backup_codes or []
            row.pending_secret = None
            row.pending_backup_codes = None
            row.is_enabled = True
            row.verified_at = verified_at
            row.version = row.version + 1
            await self.db.flush()

    async def swap_backup_codes(
        self,
        account_id: str,
        expected_version: int,
        backup_codes: BackupCodeSet,
        used_at: datetime,
    ) -> bool:
        with storage_errors("swap_backup_codes"):
            result = await self.db.execute(
                update(UserTwoFactor)
                .where(
                    UserTwoFactor.user_id == account_id,
                    UserTwoFactor.version == expected_version,
                    UserTwoFactor.is_enabled.is_(True),
                )
                .values(
                    backup_codes=backup_codes.to_list(),
                    version=expected_version + 1,
                    last_backup_used_at=used_at,
                    last_used_at=used_at,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def replace_backup_codes(self, account_id: str, backup_codes: BackupCodeSet) -> int:
        with storage_errors("replace_backup_codes"):
            result = await self.db.execute(
                update(UserTwoFactor)
                .where(UserTwoFactor.user_id == account_id)
                .values(
                    backup_codes=backup_codes.to_list(),
                    version=UserTwoFactor.version + 1,
                )
                .returning(UserTwoFactor.version)
                .execution_options(synchronize_session=False)
            )
            return result.scalar_one()

    async def disable_two_factor(self, account_id: str) -> None:
        with storage_errors("disable_two_factor"):
            await self.db.execute(
                update(UserTwoFactor)
                .where(UserTwoFactor.user_id == account_id)
                .values(
                    secret=None,
                    pending_secret=None,
                    backup_codes=None,
                    pending_backup_codes=None,
                    is_enabled=False,
                    verified_at=None,
                    version=UserTwoFactor.version + 1,
                )
                .execution_options(synchronize_session=False)
            )


class InMemoryCredentialStore:
    """Dict-backed credential store for tests and local development."""

    def __init__(self, accounts: list[AccountCredential] | None = None):
        self._accounts: dict[str, AccountCredential] = {}
        self._lock = asyncio.Lock()
        for account in accounts or []:
            self.add(account)

    def add(self, account: AccountCredential) -> AccountCredential:
        self._accounts[account.account_id] = account
        return account

    async def get_by_email(self, email: str) -> AccountCredential | None:
        wanted = normalize_email(email)
        async with self._lock:
            for account in self._accounts.values():
                if normalize_email(account.email) == wanted:
                    return account
        return None

    async def get_by_id(self, account_id: str) -> AccountCredential | None:
        async with self._lock:
            return self._accounts.get(account_id)

    async def _update(self, account_id: str, **two_factor_changes) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            return
        self._accounts[account_id] = replace(
            account,
            two_factor=replace(account.two_factor, **two_factor_changes),
        )

    async def save_pending_two_factor(
        self, account_id: str, secret: str, backup_codes: BackupCodeSet
    ) -> None:
        async with self._lock:
            await self._update(
                account_id,
                pending_secret=secret,
                pending_backup_codes=backup_codes,
            )

    async def enable_two_factor(self, account_id: str, verified_at: datetime) -> None:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.two_factor.pending_secret is None:
                return
            state = account.two_factor
            pending_codes = state.pending_backup_codes or BackupCodeSet()
            await self._update(
                account_id,
                enabled=True,
                secret=state.pending_secret,
                pending_secret=None,
                verified_at=verified_at,
                backup_codes=replace(pending_codes, version=state.backup_codes.version + 1),
                pending_backup_codes=None,
            )

    async def swap_backup_codes(
        self,
        account_id: str,
        expected_version: int,
        backup_codes: BackupCodeSet,
        used_at: datetime,
    ) -> bool:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None or not account.two_factor.enabled:
                return False
            if account.two_factor.backup_codes.version != expected_version:
                return False
            await self._update(
                account_id,
                backup_codes=replace(backup_codes, version=expected_version + 1),
            )
            return True

    async def replace_backup_codes(self, account_id: str, backup_codes: BackupCodeSet) -> int:
        async with self._lock:
            account = self._accounts[account_id]
            version = account.two_factor.backup_codes.version + 1
            await self._update(account_id, backup_codes=replace(backup_codes, version=version))
            return version

    async def disable_two_factor(self, account_id: str) -> None:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return
            version = account.two_factor.backup_codes.version + 1
            self._accounts[account_id] = replace(
                account,
                two_factor=TwoFactorState(backup_codes=BackupCodeSet(version=version)),
            )
