"""Two-factor enrollment workflow.

SETUP -> VERIFY -> COMPLETE for authenticated accounts, plus disable,
backup code regeneration and status.

The secret and backup codes generated at setup stay *pending* until the
account proves possession by entering a valid code; only then is 2FA
enabled and the backup set activated.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from lexauth.config import Settings, get_settings
from lexauth.logging_config import get_logger
from lexauth.services.audit import RequestContext, SecurityAuditLog, SecurityEventKind
from lexauth.services.backup_codes import BackupCodeVault
from lexauth.services.credentials import (
    AccountCredential,
    CredentialStore,
    consume_backup_code,
)
from lexauth.services.totp import TOTPConfig, TOTPEngine
from lexauth.utils.errors import (
    AccountInactive,
    AuthRequired,
    InvalidCodeFormat,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorNotSetUp,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class EnrollmentSetup:
    """Everything the client shows once during setup."""

    provisioning_uri: str
    manual_entry_secret: str
    backup_codes: list[str]
    issuer: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending: bool
    verified_at: datetime | None
    backup_codes_remaining: int
    backup_codes_total: int


class TwoFactorEnrollmentService:
    """Manages an account's second factor."""

    def __init__(
        self,
        credentials: CredentialStore,
        audit_log: SecurityAuditLog,
        totp: TOTPEngine | None = None,
        vault: BackupCodeVault | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.credentials = credentials
        self.audit_log = audit_log
        self.settings = settings or get_settings()
        self.totp = totp or TOTPEngine(TOTPConfig(valid_window=self.settings.totp_valid_window))
        self.vault = vault or BackupCodeVault(self.settings.backup_code_count)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _load_account(self, account_id: str, context: RequestContext) -> AccountCredential:
        account = await self.credentials.get_by_id(account_id)
        if account is None:
            raise AuthRequired(locale=context.locale)
        if not account.is_active:
            raise AccountInactive(locale=context.locale)
        return account

    def _issuer_label(self, account: AccountCredential) -> str:
        if account.organization_name:
            return f"{self.settings.totp_issuer} ({account.organization_name})"
        return self.settings.totp_issuer

    def _check_code_format(self, code: str | None, context: RequestContext, allow_backup: bool) -> None:
        if self.totp.is_valid_format(code):
            return
        if allow_backup and self.vault.is_valid_format(code):
            return
        raise InvalidCodeFormat(locale=context.locale)

    async def start_enrollment(
        self,
        account_id: str,
        context: RequestContext | None = None,
    ) -> EnrollmentSetup:
        """Generate a pending secret and backup codes.

        Calling this again before verification replaces the pending
        enrollment; the earlier QR code stops working.

        Raises:
            TwoFactorAlreadyEnabled: 2FA is already active
        """
        context = context or RequestContext()
        account = await self._load_account(account_id, context)
        if account.two_factor_enabled:
            raise TwoFactorAlreadyEnabled(locale=context.locale)

        secret = self.totp.generate_secret()
        codes, backup_set = self.vault.generate()
        await self.credentials.save_pending_two_factor(account_id, secret, backup_set)

        issuer = self._issuer_label(account)
        logger.info("two_factor_setup_started", account_id=account_id)

        return EnrollmentSetup(
            provisioning_uri=self.totp.provisioning_uri(secret, account.email, issuer),
            manual_entry_secret=secret,
            backup_codes=codes,
            issuer=issuer,
        )

    async def verify_enrollment(
        self,
        account_id: str,
        code: str | None,
        context: RequestContext | None = None,
    ) -> bool:
        """Confirm the pending secret and enable 2FA.

        Returns:
            True if 2FA is now enabled; False on a wrong code (retryable)

        Raises:
            TwoFactorNotSetUp: No enrollment in progress
            TwoFactorAlreadyEnabled: 2FA is already active
            InvalidCodeFormat: Code is not six digits
        """
        context = context or RequestContext()
        account = await self._load_account(account_id, context)
        if account.two_factor_enabled:
            raise TwoFactorAlreadyEnabled(locale=context.locale)
        if not account.two_factor.pending_secret:
            raise TwoFactorNotSetUp(locale=context.locale)
        self._check_code_format(code, context, allow_backup=False)

        now = self._clock()
        if not self.totp.verify_code(account.two_factor.pending_secret, code, now):
            await self.audit_log.record(
                SecurityEventKind.VALIDATION_FAILED,
                account_id,
                {"operation": "two_factor_enable", "reason": "invalid_code"},
                context,
            )
            return False

        await self.credentials.enable_two_factor(account_id, verified_at=now)
        logger.info("two_factor_enabled", account_id=account_id)
        await self.audit_log.record(
            SecurityEventKind.TWO_FACTOR_ENABLED,
            account_id,
            {"backup_codes_total": self.vault.count},
            context,
        )
        return True

    async def disable_two_factor(
        self,
        account_id: str,
        code: str | None,
        context: RequestContext | None = None,
    ) -> bool:
        """Turn 2FA off after a valid TOTP or unused backup code.

        Returns:
            True if 2FA was disabled; False on a wrong code (2FA untouched)

        Raises:
            TwoFactorNotEnabled: 2FA is not active
            InvalidCodeFormat: Code is neither a TOTP nor a backup code
        """
        context = context or RequestContext()
        account = await self._load_account(account_id, context)
        if not account.two_factor_enabled:
            raise TwoFactorNotEnabled(locale=context.locale)
        self._check_code_format(code, context, allow_backup=True)

        now = self._clock()
        used_backup_code = False
        verified = self.totp.verify_code(account.two_factor.secret, code, now)
        if not verified and self.vault.is_valid_format(code):
            verified = (
                await consume_backup_code(self.credentials, self.vault, account_id, code, now)
            ) is not None
            used_backup_code = verified

        if not verified:
            await self.audit_log.record(
                SecurityEventKind.VALIDATION_FAILED,
                account_id,
                {"operation": "two_factor_disable", "reason": "invalid_code"},
                context,
            )
            return False

        await self.credentials.disable_two_factor(account_id)
        logger.info("two_factor_disabled", account_id=account_id)
        await self.audit_log.record(
            SecurityEventKind.TWO_FACTOR_DISABLED,
            account_id,
            {"is_backup_code": used_backup_code},
            context,
        )
        return True

    async def regenerate_backup_codes(
        self,
        account_id: str,
        context: RequestContext | None = None,
    ) -> list[str]:
        """Replace the whole backup set; every old code stops working.

        Raises:
            TwoFactorNotEnabled: 2FA is not active
        """
        context = context or RequestContext()
        account = await self._load_account(account_id, context)
        if not account.two_factor_enabled:
            raise TwoFactorNotEnabled(locale=context.locale)

        codes, backup_set = self.vault.regenerate()
        version = await self.credentials.replace_backup_codes(account_id, backup_set)

        logger.info("backup_codes_regenerated", account_id=account_id, version=version)
        await self.audit_log.record(
            SecurityEventKind.BACKUP_CODES_REGENERATED,
            account_id,
            {
                "previous_remaining": account.two_factor.backup_codes.remaining,
                "backup_codes_total": backup_set.total,
            },
            context,
        )
        return codes

    async def get_status(
        self,
        account_id: str,
        context: RequestContext | None = None,
    ) -> TwoFactorStatus:
        context = context or RequestContext()
        account = await self._load_account(account_id, context)
        state = account.two_factor
        enabled = account.two_factor_enabled
        return TwoFactorStatus(
            enabled=enabled,
            pending=state.pending_secret is not None,
            verified_at=state.verified_at,
            backup_codes_remaining=state.backup_codes.remaining if enabled else 0,
            backup_codes_total=state.backup_codes.total if enabled else 0,
        )
