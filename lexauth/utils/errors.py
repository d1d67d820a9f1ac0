"""Authentication error taxonomy.

Every rejection the credential core produces is an ``AuthError`` carrying a
stable code, a localized user message and an HTTP status. The precise
internal reason for a rejection is never part of the message; it goes to the
security audit log instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from lexauth.config import get_settings


class AuthErrorCode(str, Enum):
    """Stable error codes for authentication failures."""

    INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    ACCOUNT_INACTIVE = "AUTH_ACCOUNT_INACTIVE"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_CODE_FORMAT = "AUTH_INVALID_CODE_FORMAT"
    INVALID_CODE = "AUTH_INVALID_CODE"
    CHALLENGE_EXPIRED = "AUTH_CHALLENGE_EXPIRED"
    CHALLENGE_EXHAUSTED = "AUTH_CHALLENGE_EXHAUSTED"
    RATE_LIMITED = "RATE_LIMIT_EXCEEDED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    TWO_FACTOR_NOT_SETUP = "2FA_NOT_SETUP"
    TWO_FACTOR_NOT_ENABLED = "2FA_NOT_ENABLED"
    TWO_FACTOR_ALREADY_ENABLED = "2FA_ALREADY_ENABLED"


MESSAGES: dict[str, dict[AuthErrorCode, str]] = {
    "hr": {
        AuthErrorCode.INVALID_CREDENTIALS: "Neispravni podaci za prijavu",
        AuthErrorCode.ACCOUNT_INACTIVE: "Vaš račun je deaktiviran",
        AuthErrorCode.AUTH_REQUIRED: "Neautoriziran pristup",
        AuthErrorCode.INVALID_CODE_FORMAT: "Neispravan format koda",
        AuthErrorCode.INVALID_CODE: "Neispravan kod. Molimo pokušajte ponovno.",
        AuthErrorCode.CHALLENGE_EXPIRED: "Sesija prijave je istekla. Prijavite se ponovno.",
        AuthErrorCode.CHALLENGE_EXHAUSTED: "Previše neuspjelih pokušaja. Prijavite se ponovno.",
        AuthErrorCode.RATE_LIMITED: "Previše zahtjeva. Molimo pokušajte ponovno kasnije.",
        AuthErrorCode.STORAGE_UNAVAILABLE: "Usluga trenutno nije dostupna. Pokušajte ponovno kasnije.",
        AuthErrorCode.TWO_FACTOR_NOT_SETUP: "Dvofaktorska autentifikacija nije postavljena.",
        AuthErrorCode.TWO_FACTOR_NOT_ENABLED: "Dvofaktorska autentifikacija je onemogućena",
        AuthErrorCode.TWO_FACTOR_ALREADY_ENABLED: "Dvofaktorska autentifikacija je već omogućena.",
    },
    "en": {
        AuthErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
        AuthErrorCode.ACCOUNT_INACTIVE: "Your account has been deactivated",
        AuthErrorCode.AUTH_REQUIRED: "Authentication required",
        AuthErrorCode.INVALID_CODE_FORMAT: "Invalid code format",
        AuthErrorCode.INVALID_CODE: "Invalid code. Please try again.",
        AuthErrorCode.CHALLENGE_EXPIRED: "Your sign-in session has expired. Please sign in again.",
        AuthErrorCode.CHALLENGE_EXHAUSTED: "Too many failed attempts. Please sign in again.",
        AuthErrorCode.RATE_LIMITED: "Too many requests. Please try again later.",
        AuthErrorCode.STORAGE_UNAVAILABLE: "Service temporarily unavailable. Please try again later.",
        AuthErrorCode.TWO_FACTOR_NOT_SETUP: "Two-factor authentication is not set up.",
        AuthErrorCode.TWO_FACTOR_NOT_ENABLED: "Two-factor authentication is not enabled",
        AuthErrorCode.TWO_FACTOR_ALREADY_ENABLED: "Two-factor authentication is already enabled.",
    },
}


def user_message(code: AuthErrorCode, locale: str | None = None) -> str:
    """Look up the user-facing message for an error code."""
    catalogue = MESSAGES.get(locale or get_settings().default_locale, MESSAGES["en"])
    return catalogue[code]


class AuthError(Exception):
    """Authentication error with code.

    Attributes:
        code: Error code for programmatic handling
        message: Localized user-facing message
        details: Machine-readable details safe to return to the caller
        status_code: HTTP status the API layer responds with
    """

    error_code: AuthErrorCode = AuthErrorCode.INVALID_CREDENTIALS
    status_code: int = 401

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        locale: str | None = None,
    ):
        self.code = self.error_code.value
        self.message = message or user_message(self.error_code, locale)
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API error envelope."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class InvalidCredentials(AuthError):
    """Unknown email, wrong password or unusable account. Always generic."""

    error_code = AuthErrorCode.INVALID_CREDENTIALS
    status_code = 401


class AccountInactive(AuthError):
    """Authenticated subject whose account has been deactivated."""

    error_code = AuthErrorCode.ACCOUNT_INACTIVE
    status_code = 403


class AuthRequired(AuthError):
    """Missing or invalid bearer token."""

    error_code = AuthErrorCode.AUTH_REQUIRED
    status_code = 401


class InvalidCodeFormat(AuthError):
    """Second-factor code failed the format check before any hashing."""

    error_code = AuthErrorCode.INVALID_CODE_FORMAT
    status_code = 400


class InvalidCode(AuthError):
    """Well-formed code that did not match, or an already-used backup code."""

    error_code = AuthErrorCode.INVALID_CODE
    status_code = 401


class ChallengeExpired(AuthError):
    """Login challenge is unknown, expired or already consumed."""

    error_code = AuthErrorCode.CHALLENGE_EXPIRED
    status_code = 401


class ChallengeExhausted(AuthError):
    """Too many failed second-factor attempts against one challenge."""

    error_code = AuthErrorCode.CHALLENGE_EXHAUSTED
    status_code = 401


class StorageUnavailable(AuthError):
    """A store needed on the critical path failed; the request is rejected."""

    error_code = AuthErrorCode.STORAGE_UNAVAILABLE
    status_code = 503


class TwoFactorNotSetUp(AuthError):
    """Enrollment verification without a pending secret."""

    error_code = AuthErrorCode.TWO_FACTOR_NOT_SETUP
    status_code = 400


class TwoFactorNotEnabled(AuthError):
    """Operation needs 2FA to be enabled."""

    error_code = AuthErrorCode.TWO_FACTOR_NOT_ENABLED
    status_code = 400


class TwoFactorAlreadyEnabled(AuthError):
    """Enrollment started while 2FA is already active."""

    error_code = AuthErrorCode.TWO_FACTOR_ALREADY_ENABLED
    status_code = 409


class RateLimited(AuthError):
    """Request rejected by the rate limiter."""

    error_code = AuthErrorCode.RATE_LIMITED
    status_code = 429

    def __init__(
        self,
        limit: int,
        remaining: int,
        reset_at: int,
        retry_after: int,
        locale: str | None = None,
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(
            details={
                "limit": limit,
                "remaining": remaining,
                "reset_at": reset_at,
                "retry_after": retry_after,
            },
            locale=locale,
        )

    @property
    def headers(self) -> dict[str, str]:
        """Rate limit headers for the HTTP response."""
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
