"""API dependencies for authentication and common utilities."""

import uuid
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from lexauth.config import get_settings
from lexauth.middleware.rate_limit import get_client_ip
from lexauth.services.audit import RequestContext, SecurityAuditLog
from lexauth.services.challenges import ChallengeStore
from lexauth.services.credentials import AccountCredential, CredentialStore, SqlCredentialStore
from lexauth.services.enrollment import TwoFactorEnrollmentService
from lexauth.services.login import LoginService
from lexauth.services.rate_limiter import RateLimiter
from lexauth.utils.db import get_db
from lexauth.utils.errors import MESSAGES, AccountInactive, AuthRequired
from lexauth.utils.security import TokenError, verify_access_token

settings = get_settings()

# HTTP Bearer security scheme
security = HTTPBearer(auto_error=False)


def get_trace_id(request: Request) -> str:
    """Trace id set by the request id middleware, or a fresh one."""
    trace_id = getattr(request.state, "trace_id", None)
    return trace_id or request.headers.get("X-Trace-Id") or str(uuid.uuid4())


def get_locale(request: Request) -> str | None:
    """Pick a message catalogue from Accept-Language (first supported tag)."""
    accept_language = request.headers.get("accept-language", "")
    for part in accept_language.split(","):
        tag = part.split(";")[0].strip().lower()[:2]
        if tag in MESSAGES:
            return tag
    return None


def get_request_context(
    request: Request,
    trace_id: Annotated[str, Depends(get_trace_id)],
) -> RequestContext:
    """Request metadata for services and the audit log."""
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        trace_id=trace_id,
        locale=get_locale(request),
    )


# =============================================================================
# Shared components (built at startup, see lexauth.main.lifespan)
# =============================================================================


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_challenge_store(request: Request) -> ChallengeStore:
    return request.app.state.challenge_store


def get_audit_log(request: Request) -> SecurityAuditLog:
    return request.app.state.audit_log


def get_credential_store(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CredentialStore:
    return SqlCredentialStore(db)


def get_login_service(
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    challenges: Annotated[ChallengeStore, Depends(get_challenge_store)],
    rate_limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    audit_log: Annotated[SecurityAuditLog, Depends(get_audit_log)],
) -> LoginService:
    return LoginService(
        credentials=credentials,
        challenges=challenges,
        rate_limiter=rate_limiter,
        audit_log=audit_log,
        settings=settings,
    )


def get_enrollment_service(
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
    audit_log: Annotated[SecurityAuditLog, Depends(get_audit_log)],
) -> TwoFactorEnrollmentService:
    return TwoFactorEnrollmentService(
        credentials=credentials,
        audit_log=audit_log,
        settings=settings,
    )


# =============================================================================
# Authentication
# =============================================================================


async def get_current_account(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    store: Annotated[CredentialStore, Depends(get_credential_store)],
    context: Annotated[RequestContext, Depends(get_request_context)],
) -> AccountCredential:
    """Get current account from bearer token (required auth).

    Raises:
        AuthRequired: Missing, invalid or expired token, or unknown account
        AccountInactive: Account has been deactivated
    """
    if not credentials:
        raise AuthRequired(locale=context.locale)

    try:
        payload = verify_access_token(credentials.credentials)
    except TokenError as e:
        raise AuthRequired(details={"reason": e.code}, locale=context.locale) from e

    account_id = payload.get("sub") if payload else None
    if not account_id:
        raise AuthRequired(locale=context.locale)

    account = await store.get_by_id(account_id)
    if account is None:
        raise AuthRequired(locale=context.locale)
    if not account.is_active:
        raise AccountInactive(locale=context.locale)

    # Later audit events from this request are attributed to the account
    context.subject_id = account.account_id
    return account


# Type aliases for dependency injection
CurrentAccount = Annotated[AccountCredential, Depends(get_current_account)]
Context = Annotated[RequestContext, Depends(get_request_context)]
Login = Annotated[LoginService, Depends(get_login_service)]
Enrollment = Annotated[TwoFactorEnrollmentService, Depends(get_enrollment_service)]
