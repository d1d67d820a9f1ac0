"""Authentication request and response schemas."""

from datetime import datetime

from pydantic import ConfigDict, EmailStr, Field

from lexauth.schemas.common import BaseSchema

# =============================================================================
# Login
# =============================================================================


class LoginRequest(BaseSchema):
    """Password login, optionally with a second-factor code in the same request."""

    # Passwords are compared exactly as typed
    model_config = ConfigDict(str_strip_whitespace=False)

    email: EmailStr = Field(..., description="Account email address")
    password: str = Field(..., min_length=1, max_length=256, description="Account password")
    code: str | None = Field(
        default=None,
        max_length=16,
        description="TOTP or backup code, for a one-step login",
    )


class CompleteLoginRequest(BaseSchema):
    """Second step of a two-factor login."""

    challenge_id: str = Field(
        ...,
        alias="challengeId",
        min_length=1,
        max_length=128,
        description="Challenge returned by /login",
    )
    code: str = Field(..., max_length=16, description="6-digit TOTP code or backup code")
    email: EmailStr | None = Field(default=None, description="Optional; must match the challenge")


class TokenResponse(BaseSchema):
    """Access token issued after full authentication."""

    access_token: str = Field(..., alias="accessToken")
    token_type: str = Field(default="Bearer", alias="tokenType")
    expires_in: int = Field(..., alias="expiresIn", description="Access token expiry in seconds")


class AccountResponse(BaseSchema):
    """Authenticated account summary."""

    id: str
    email: str
    organization_id: str | None = Field(default=None, alias="organizationId")


class LoginResponse(BaseSchema):
    """Login outcome: authenticated, or a second factor is required."""

    status: str = Field(..., description="AUTHENTICATED or REQUIRES_2FA")
    user: AccountResponse | None = None
    tokens: TokenResponse | None = None
    challenge_id: str | None = Field(default=None, alias="challengeId")
    challenge_expires_at: datetime | None = Field(default=None, alias="challengeExpiresAt")
    two_factor_used: bool = Field(default=False, alias="twoFactorUsed")
    backup_codes_remaining: int | None = Field(default=None, alias="backupCodesRemaining")


# =============================================================================
# Two-factor management
# =============================================================================


class TwoFactorSetupResponse(BaseSchema):
    """Response for 2FA setup. Shown once."""

    secret: str = Field(..., description="Base32 secret for manual entry")
    provisioning_uri: str = Field(..., alias="provisioningUri", description="otpauth:// URI for the QR code")
    backup_codes: list[str] = Field(..., alias="backupCodes", description="One-time backup codes")
    issuer: str
    message: str = Field(default="Scan the QR code with your authenticator app")


class TwoFactorCodeRequest(BaseSchema):
    """Request carrying a second-factor code (verify, disable)."""

    code: str = Field(..., max_length=16, description="6-digit TOTP code or backup code")


class TwoFactorStatusResponse(BaseSchema):
    """Response for 2FA status check."""

    is_enabled: bool = Field(..., alias="isEnabled")
    is_pending: bool = Field(..., alias="isPending")
    verified_at: datetime | None = Field(default=None, alias="verifiedAt")
    backup_codes_remaining: int = Field(..., alias="backupCodesRemaining")
    backup_codes_total: int = Field(..., alias="backupCodesTotal")


class BackupCodesResponse(BaseSchema):
    """Freshly generated backup codes. Shown once."""

    backup_codes: list[str] = Field(..., alias="backupCodes")
    message: str = Field(default="Store these codes somewhere safe. Previous codes no longer work.")
