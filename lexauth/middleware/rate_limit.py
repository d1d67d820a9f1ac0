"""Rate limiting middleware.

Applies the ``api``, ``upload`` and ``search`` budgets to every HTTP request.
Login and second-factor budgets are charged by the login service itself.
"""

from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from lexauth.logging_config import get_logger
from lexauth.services.audit import RequestContext
from lexauth.services.rate_limiter import ActionClass, RateLimiter, resolve_identifier
from lexauth.utils.errors import RateLimited
from lexauth.utils.json_utils import ORJSONResponse
from lexauth.utils.security import TokenError, verify_access_token

logger = get_logger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request.

    Handles X-Forwarded-For header for reverse proxy setups.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # Take first IP in chain (original client)
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_bearer_subject(request: Request) -> str | None:
    """Account id from a valid bearer token, if any."""
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        payload = verify_access_token(token)
    except TokenError:
        return None
    return payload.get("sub") if payload else None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiting by action class.

    Requests are counted per account when a valid bearer token is present,
    otherwise per client IP.
    """

    # Path prefix -> action class; first match wins
    ACTION_CLASSES: list[tuple[str, ActionClass]] = [
        ("/api/v1/documents/upload", ActionClass.UPLOAD),
        ("/api/v1/search", ActionClass.SEARCH),
    ]

    EXEMPT_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json")

    def __init__(self, app: Callable, rate_limiter: RateLimiter | None = None):
        """Initialize rate limiter.

        Args:
            app: ASGI application
            rate_limiter: Limiter instance; falls back to ``app.state.rate_limiter``
                and disables limiting if neither is set
        """
        super().__init__(app)
        self._rate_limiter = rate_limiter

    def _get_limiter(self, request: Request) -> RateLimiter | None:
        return self._rate_limiter or getattr(request.app.state, "rate_limiter", None)

    def _get_action_class(self, path: str) -> ActionClass:
        for prefix, action_class in self.ACTION_CLASSES:
            if path.startswith(prefix):
                return action_class
        return ActionClass.API

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check rate limit before processing request."""
        path = request.url.path
        if path.startswith(self.EXEMPT_PREFIXES):
            return await call_next(request)

        limiter = self._get_limiter(request)
        if limiter is None:
            return await call_next(request)

        subject_id = get_bearer_subject(request)
        context = RequestContext(
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            trace_id=getattr(request.state, "trace_id", None),
            subject_id=subject_id,
        )
        identifier = resolve_identifier(subject_id, context.ip_address)

        try:
            result = await limiter.enforce(identifier, self._get_action_class(path), context)
        except RateLimited as e:
            return ORJSONResponse(
                status_code=e.status_code,
                content=e.to_dict(),
                headers=e.headers,
            )

        response = await call_next(request)
        # A login or 2FA rejection inside the request sets its own headers
        for header, value in result.headers.items():
            response.headers.setdefault(header, value)
        return response
