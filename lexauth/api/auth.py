"""Authentication API endpoints.

- Password login with optional second factor
- Two-step completion against a login challenge
- Two-factor setup, verification, disable, backup code regeneration, status
"""

from fastapi import APIRouter, status

from lexauth.api.deps import Context, CurrentAccount, Enrollment, Login
from lexauth.schemas import (
    AccountResponse,
    BackupCodesResponse,
    CompleteLoginRequest,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    SuccessResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from lexauth.services.credentials import AccountCredential
from lexauth.services.login import LoginResult, LoginStatus
from lexauth.utils.errors import InvalidCode
from lexauth.utils.security import create_token_response

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _login_response(result: LoginResult, account: AccountCredential | None = None) -> LoginResponse:
    """Turn a service result into the HTTP body, raising rejections."""
    if result.status == LoginStatus.REJECTED:
        raise result.error

    if result.status == LoginStatus.REQUIRES_2FA:
        return LoginResponse(
            status=result.status.value,
            challenge_id=result.challenge_id,
            challenge_expires_at=result.expires_at,
        )

    tokens = create_token_response(result.account_id)
    return LoginResponse(
        status=result.status.value,
        user=AccountResponse(
            id=result.account_id,
            email=account.email if account else "",
            organization_id=account.organization_id if account else None,
        ),
        tokens=TokenResponse(**tokens),
        two_factor_used=result.two_factor_used,
        backup_codes_remaining=result.backup_codes_remaining,
    )


async def _authenticated_account(login_service: Login, result: LoginResult) -> AccountCredential | None:
    if result.status != LoginStatus.AUTHENTICATED:
        return None
    return await login_service.credentials.get_by_id(result.account_id)


# =============================================================================
# Login
# =============================================================================


@router.post(
    "/login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials or code"},
        429: {"model": ErrorResponse, "description": "Too many attempts"},
        503: {"model": ErrorResponse, "description": "Credential storage unavailable"},
    },
)
async def login(request_body: LoginRequest, login_service: Login, context: Context):
    """Authenticate with email and password.

    Returns tokens directly for accounts without 2FA. Accounts with 2FA get
    ``REQUIRES_2FA`` and a challenge id to complete at
    ``/2fa/complete-login``, unless a code is sent along with the password.
    """
    result = await login_service.login(
        email=request_body.email,
        password=request_body.password,
        code=request_body.code,
        context=context,
    )
    return _login_response(result, await _authenticated_account(login_service, result))


@router.post(
    "/2fa/complete-login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed code"},
        401: {"model": ErrorResponse, "description": "Invalid code or expired challenge"},
        429: {"model": ErrorResponse, "description": "Too many attempts"},
    },
)
async def complete_login(request_body: CompleteLoginRequest, login_service: Login, context: Context):
    """Finish a two-step login with a TOTP code or a backup code."""
    result = await login_service.complete_login(
        challenge_id=request_body.challenge_id,
        code=request_body.code,
        email=request_body.email,
        context=context,
    )
    return _login_response(result, await _authenticated_account(login_service, result))


# =============================================================================
# Two-Factor Management
# =============================================================================


@router.post(
    "/2fa/setup",
    response_model=TwoFactorSetupResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        409: {"model": ErrorResponse, "description": "2FA already enabled"},
    },
)
async def setup_two_factor(current: CurrentAccount, enrollment: Enrollment, context: Context):
    """Set up two-factor authentication.

    Generates a new TOTP secret and backup codes.
    The account must verify with a code before 2FA is enabled.
    """
    setup = await enrollment.start_enrollment(current.account_id, context)
    return TwoFactorSetupResponse(
        secret=setup.manual_entry_secret,
        provisioning_uri=setup.provisioning_uri,
        backup_codes=setup.backup_codes,
        issuer=setup.issuer,
    )


@router.post(
    "/2fa/verify",
    response_model=SuccessResponse,
    responses={
        400: {"model": ErrorResponse, "description": "2FA not set up or malformed code"},
        401: {"model": ErrorResponse, "description": "Invalid code"},
    },
)
async def verify_two_factor(
    request_body: TwoFactorCodeRequest,
    current: CurrentAccount,
    enrollment: Enrollment,
    context: Context,
):
    """Verify the first code from the authenticator app and enable 2FA."""
    if not await enrollment.verify_enrollment(current.account_id, request_body.code, context):
        raise InvalidCode(locale=context.locale)
    return SuccessResponse(message="Two-factor authentication has been enabled")


@router.post(
    "/2fa/disable",
    response_model=SuccessResponse,
    responses={
        400: {"model": ErrorResponse, "description": "2FA not enabled or malformed code"},
        401: {"model": ErrorResponse, "description": "Invalid code"},
    },
)
async def disable_two_factor(
    request_body: TwoFactorCodeRequest,
    current: CurrentAccount,
    enrollment: Enrollment,
    context: Context,
):
    """Disable two-factor authentication.

    Requires a valid TOTP code or an unused backup code.
    """
    if not await enrollment.disable_two_factor(current.account_id, request_body.code, context):
        raise InvalidCode(locale=context.locale)
    return SuccessResponse(message="Two-factor authentication has been disabled")


@router.post(
    "/2fa/regenerate-codes",
    response_model=BackupCodesResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse, "description": "2FA not enabled"}},
)
async def regenerate_backup_codes(current: CurrentAccount, enrollment: Enrollment, context: Context):
    """Replace all backup codes. Every previous code stops working."""
    codes = await enrollment.regenerate_backup_codes(current.account_id, context)
    return BackupCodesResponse(backup_codes=codes)


@router.get("/2fa/status", response_model=TwoFactorStatusResponse)
async def get_two_factor_status(current: CurrentAccount, enrollment: Enrollment, context: Context):
    """Get the current 2FA status."""
    state = await enrollment.get_status(current.account_id, context)
    return TwoFactorStatusResponse(
        is_enabled=state.enabled,
        is_pending=state.pending,
        verified_at=state.verified_at,
        backup_codes_remaining=state.backup_codes_remaining,
        backup_codes_total=state.backup_codes_total,
    )
