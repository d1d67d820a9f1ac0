"""Login state machine.

START -> PASSWORD_CHECKED -> AUTHENTICATED
                          -> AWAITING_2FA -> AUTHENTICATED | REJECTED

Password authentication comes first. Accounts with two-factor enabled then
receive a single-use challenge and must present a TOTP code or an unused
backup code against it. Every terminal outcome is audited; the precise
rejection reason goes to the audit log only, never to the caller.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from lexauth.config import Settings, get_settings
from lexauth.logging_config import get_logger
from lexauth.services.audit import RequestContext, SecurityAuditLog, SecurityEventKind
from lexauth.services.backup_codes import BackupCodeVault
from lexauth.services.challenges import ChallengeStore, LoginChallenge
from lexauth.services.credentials import (
    AccountCredential,
    CredentialStore,
    consume_backup_code,
    normalize_email,
)
from lexauth.services.rate_limiter import ActionClass, RateLimiter, resolve_identifier
from lexauth.services.totp import TOTPConfig, TOTPEngine
from lexauth.utils.errors import (
    AuthError,
    ChallengeExhausted,
    ChallengeExpired,
    InvalidCode,
    InvalidCodeFormat,
    InvalidCredentials,
    StorageUnavailable,
)
from lexauth.utils.security import burn_password_check, mask_identifier, verify_password

logger = get_logger(__name__)


class LoginState(str, Enum):
    START = "START"
    PASSWORD_CHECKED = "PASSWORD_CHECKED"
    AWAITING_2FA = "AWAITING_2FA"
    AUTHENTICATED = "AUTHENTICATED"
    REJECTED = "REJECTED"


class LoginStatus(str, Enum):
    AUTHENTICATED = "AUTHENTICATED"
    REQUIRES_2FA = "REQUIRES_2FA"
    REJECTED = "REJECTED"


@dataclass
class LoginResult:
    """Outcome of one login call."""

    status: LoginStatus
    state: LoginState
    account_id: str | None = None
    challenge_id: str | None = None
    expires_at: datetime | None = None
    error: AuthError | None = None
    two_factor_used: bool = False
    used_backup_code: bool = False
    backup_codes_remaining: int | None = None

    @property
    def error_message(self) -> str | None:
        return self.error.message if self.error else None

    @classmethod
    def rejected(cls, error: AuthError) -> "LoginResult":
        return cls(status=LoginStatus.REJECTED, state=LoginState.REJECTED, error=error)


@dataclass(frozen=True)
class SecondFactorOutcome:
    used_backup_code: bool = False
    backup_codes_remaining: int | None = None


class LoginService:
    """Password + second-factor login."""

    def __init__(
        self,
        credentials: CredentialStore,
        challenges: ChallengeStore,
        rate_limiter: RateLimiter,
        audit_log: SecurityAuditLog,
        totp: TOTPEngine | None = None,
        vault: BackupCodeVault | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.credentials = credentials
        self.challenges = challenges
        self.rate_limiter = rate_limiter
        self.audit_log = audit_log
        self.vault = vault or BackupCodeVault()
        self.settings = settings or get_settings()
        self.totp = totp or TOTPEngine(TOTPConfig(valid_window=self.settings.totp_valid_window))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def login(
        self,
        email: str | None,
        password: str | None,
        code: str | None = None,
        challenge_id: str | None = None,
        context: RequestContext | None = None,
    ) -> LoginResult:
        """Run one step of the login state machine.

        Args:
            email: Account email (optional when completing a challenge)
            password: Plain password (ignored when completing a challenge)
            code: TOTP or backup code, if the caller has one
            challenge_id: Challenge from a previous REQUIRES_2FA result
            context: Request metadata

        Returns:
            LoginResult; rejections carry the ``AuthError`` to surface
        """
        context = context or RequestContext()
        try:
            if challenge_id:
                await self.rate_limiter.enforce(
                    resolve_identifier(context.subject_id, context.ip_address),
                    ActionClass.TWO_FACTOR,
                    context,
                )
                return await self._complete_challenge(challenge_id, code, email, context)

            await self.rate_limiter.enforce(
                resolve_identifier(context.subject_id, context.ip_address),
                ActionClass.AUTH,
                context,
            )
            return await self._password_step(email, password, code, context)
        except AuthError as e:
            return LoginResult.rejected(e)

    async def complete_login(
        self,
        challenge_id: str,
        code: str | None,
        email: str | None = None,
        context: RequestContext | None = None,
    ) -> LoginResult:
        """Second step of a two-step login."""
        return await self.login(email, None, code=code, challenge_id=challenge_id, context=context)

    async def _password_step(
        self,
        email: str | None,
        password: str | None,
        code: str | None,
        context: RequestContext,
    ) -> LoginResult:
        account = await self._check_password(email, password, context)
        await self._reject_invalid_two_factor_state(account, context)

        if not account.two_factor_enabled:
            await self._record_login(account, context, SecondFactorOutcome(), two_factor_used=False)
            return LoginResult(
                status=LoginStatus.AUTHENTICATED,
                state=LoginState.AUTHENTICATED,
                account_id=account.account_id,
            )

        if not code:
            challenge = await self.challenges.create(
                account.account_id,
                self.settings.login_challenge_ttl_seconds,
                now=self._clock(),
            )
            logger.info(
                "login_requires_2fa",
                account_id=account.account_id,
                challenge=mask_identifier(challenge.challenge_id),
            )
            return LoginResult(
                status=LoginStatus.REQUIRES_2FA,
                state=LoginState.AWAITING_2FA,
                account_id=account.account_id,
                challenge_id=challenge.challenge_id,
                expires_at=challenge.expires_at,
            )

        # Password and code in one request: verify directly, no challenge
        try:
            outcome = await self._verify_second_factor(account, code, context)
        except (InvalidCodeFormat, InvalidCode) as e:
            await self._record_failure(
                account.account_id,
                e.code,
                context,
                stage="two_factor",
                organization_id=account.organization_id,
            )
            raise

        await self._record_login(account, context, outcome, two_factor_used=True)
        return self._authenticated(account, outcome)

    async def _reject_invalid_two_factor_state(
        self, account: AccountCredential, context: RequestContext
    ) -> None:
        # Never fall back to password-only for an account marked as enrolled
        if not account.two_factor_state_invalid:
            return
        logger.error("two_factor_state_invalid", account_id=account.account_id)
        await self._record_failure(
            account.account_id,
            "two_factor_state_invalid",
            context,
            stage="two_factor",
            organization_id=account.organization_id,
        )
        raise StorageUnavailable(locale=context.locale)

    async def _check_password(
        self,
        email: str | None,
        password: str | None,
        context: RequestContext,
    ) -> AccountCredential:
        """START -> PASSWORD_CHECKED, or InvalidCredentials for every failure."""
        password = password or ""
        normalized = normalize_email(email)
        account = await self.credentials.get_by_email(normalized) if normalized else None

        reason = None
        if account is None:
            burn_password_check(password)
            reason = "unknown_account"
        elif not account.password_hash:
            burn_password_check(password)
            reason = "no_password"
        elif not verify_password(password, account.password_hash):
            reason = "wrong_password"
        elif not account.is_active:
            reason = "account_inactive"

        if reason is not None:
            await self._record_failure(
                account.account_id if account else None,
                reason,
                context,
                stage="password",
                organization_id=account.organization_id if account else None,
            )
            raise InvalidCredentials(locale=context.locale)

        return account

    async def _complete_challenge(
        self,
        challenge_id: str,
        code: str | None,
        email: str | None,
        context: RequestContext,
    ) -> LoginResult:
        """AWAITING_2FA -> AUTHENTICATED | REJECTED."""
        challenge = await self.challenges.get(challenge_id, now=self._clock())
        if challenge is None:
            await self._record_failure(None, "challenge_not_found", context, stage="two_factor")
            raise ChallengeExpired(locale=context.locale)

        account = await self.credentials.get_by_id(challenge.account_id)

        # The challenge is the correlator; a mismatched email gets nothing
        if email and (account is None or normalize_email(account.email) != normalize_email(email)):
            await self._record_failure(None, "challenge_email_mismatch", context, stage="two_factor")
            raise ChallengeExpired(locale=context.locale)

        if account is not None and account.two_factor_state_invalid:
            await self.challenges.consume(challenge_id)
            await self._reject_invalid_two_factor_state(account, context)

        if account is None or not account.is_active or not account.two_factor_enabled:
            await self.challenges.consume(challenge_id)
            await self._record_failure(
                challenge.account_id,
                "account_unavailable",
                context,
                stage="two_factor",
                organization_id=account.organization_id if account else None,
            )
            raise InvalidCredentials(locale=context.locale)

        try:
            outcome = await self._verify_second_factor(
                account,
                code,
                context,
                before_commit=lambda: self._claim_challenge(challenge, account, context),
            )
        except (InvalidCodeFormat, InvalidCode) as e:
            raise await self._count_failed_attempt(challenge, account, e, context)

        await self._record_login(account, context, outcome, two_factor_used=True)
        return self._authenticated(account, outcome)

    async def _claim_challenge(
        self,
        challenge: LoginChallenge,
        account: AccountCredential,
        context: RequestContext,
    ) -> None:
        # Only one concurrent caller gets the delete
        if not await self.challenges.consume(challenge.challenge_id):
            await self._record_failure(
                challenge.account_id,
                "challenge_already_used",
                context,
                stage="two_factor",
                organization_id=account.organization_id,
            )
            raise ChallengeExpired(locale=context.locale)

    async def _count_failed_attempt(
        self,
        challenge: LoginChallenge,
        account: AccountCredential,
        error: AuthError,
        context: RequestContext,
    ) -> AuthError:
        """Record a failed code against the challenge; returns the error to raise."""
        max_attempts = self.settings.login_challenge_max_attempts
        attempts = await self.challenges.record_failure(challenge.challenge_id, max_attempts)

        await self._record_failure(
            challenge.account_id,
            error.code,
            context,
            stage="two_factor",
            attempts=attempts,
            organization_id=account.organization_id,
        )

        if attempts is None:
            return ChallengeExpired(locale=context.locale)
        if attempts >= max_attempts:
            logger.warning(
                "login_challenge_exhausted",
                account_id=challenge.account_id,
                attempts=attempts,
            )
            return ChallengeExhausted(locale=context.locale)
        return error

    async def _verify_second_factor(
        self,
        account: AccountCredential,
        code: str | None,
        context: RequestContext,
        before_commit: Callable[[], Awaitable[None]] | None = None,
    ) -> SecondFactorOutcome:
        """Check a TOTP code, then a backup code.

        ``before_commit`` runs after the code is known to be valid and before
        a backup code is marked consumed.
        """
        now = self._clock()

        if self.totp.is_valid_format(code):
            if not self.totp.verify_code(account.two_factor.secret, code, now):
                raise InvalidCode(locale=context.locale)
            if before_commit is not None:
                await before_commit()
            return SecondFactorOutcome()

        if self.vault.is_valid_format(code):
            ok, _ = self.vault.verify_and_consume(account.two_factor.backup_codes, code, now)
            if not ok:
                raise InvalidCode(locale=context.locale)
            if before_commit is not None:
                await before_commit()
            updated = await consume_backup_code(
                self.credentials, self.vault, account.account_id, code, now
            )
            if updated is None:
                # Lost the race for this code to a concurrent request
                raise InvalidCode(locale=context.locale)
            return SecondFactorOutcome(
                used_backup_code=True,
                backup_codes_remaining=updated.remaining,
            )

        raise InvalidCodeFormat(locale=context.locale)

    def _authenticated(self, account: AccountCredential, outcome: SecondFactorOutcome) -> LoginResult:
        return LoginResult(
            status=LoginStatus.AUTHENTICATED,
            state=LoginState.AUTHENTICATED,
            account_id=account.account_id,
            two_factor_used=True,
            used_backup_code=outcome.used_backup_code,
            backup_codes_remaining=outcome.backup_codes_remaining,
        )

    async def _record_login(
        self,
        account: AccountCredential,
        context: RequestContext,
        outcome: SecondFactorOutcome,
        two_factor_used: bool,
    ) -> None:
        logger.info(
            "login_success",
            account_id=account.account_id,
            two_factor_used=two_factor_used,
            backup_code=outcome.used_backup_code,
        )
        await self.audit_log.record(
            SecurityEventKind.LOGIN,
            account.account_id,
            {
                "two_factor_used": two_factor_used,
                "is_backup_code": outcome.used_backup_code,
                "organization_id": account.organization_id,
            },
            context,
        )
        if outcome.used_backup_code:
            await self.audit_log.record(
                SecurityEventKind.BACKUP_CODE_USED,
                account.account_id,
                {"remaining_codes": outcome.backup_codes_remaining},
                context,
            )

    async def _record_failure(
        self,
        subject_id: str | None,
        reason: str,
        context: RequestContext,
        stage: str,
        attempts: int | None = None,
        organization_id: str | None = None,
    ) -> None:
        logger.info("login_failed", subject_id=subject_id, reason=reason, stage=stage)
        metadata = {"reason": reason, "stage": stage}
        if attempts is not None:
            metadata["attempts"] = attempts
        if organization_id is not None:
            metadata["organization_id"] = organization_id
        await self.audit_log.record(SecurityEventKind.LOGIN_FAILED, subject_id, metadata, context)
