"""Sliding-window rate limiter.

Each (action class, identifier) pair keeps a log of admitted request
timestamps. A request is admitted only if fewer than ``limit`` timestamps
fall inside the trailing window; admission and counting happen in one atomic
storage operation so concurrent requests cannot overshoot the budget.
Rejected requests are not recorded.

If the counter store is unreachable the limiter fails open: the request is
admitted, a warning is logged, Sentry is notified and a
``RATE_LIMIT_DEGRADED`` event is recorded.
"""

import asyncio
import math
import secrets
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from lexauth.config import Settings, get_settings
from lexauth.logging_config import get_logger
from lexauth.middleware.sentry import capture_security_error
from lexauth.services.audit import RequestContext, SecurityAuditLog, SecurityEventKind
from lexauth.utils.errors import RateLimited

logger = get_logger(__name__)

# Trim, count, conditionally add, refresh expiry. Returns
# {admitted (0/1), count after the call, oldest timestamp in window (ms)}.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local admitted = 0
if count < limit then
    redis.call('ZADD', key, now, member)
    count = count + 1
    admitted = 1
end
redis.call('PEXPIRE', key, window)

local oldest = now
local first = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if first[2] then
    oldest = tonumber(first[2])
end
return {admitted, count, oldest}
"""


class ActionClass(str, Enum):
    """Categories of requests with separate budgets."""

    AUTH = "auth"
    TWO_FACTOR = "two_factor"
    API = "api"
    UPLOAD = "upload"
    SEARCH = "search"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Budget for one action class."""

    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds when the oldest counted request leaves the window
    retry_after: int  # seconds; 0 when allowed
    degraded: bool = False

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


def policies_from_settings(settings: Settings | None = None) -> dict[ActionClass, RateLimitPolicy]:
    """Build per-class budgets from configuration."""
    settings = settings or get_settings()
    return {
        ActionClass.AUTH: RateLimitPolicy(
            settings.rate_limit_auth_requests, settings.rate_limit_auth_window
        ),
        ActionClass.TWO_FACTOR: RateLimitPolicy(
            settings.rate_limit_two_factor_requests, settings.rate_limit_two_factor_window
        ),
        ActionClass.API: RateLimitPolicy(
            settings.rate_limit_api_requests, settings.rate_limit_api_window
        ),
        ActionClass.UPLOAD: RateLimitPolicy(
            settings.rate_limit_upload_requests, settings.rate_limit_upload_window
        ),
        ActionClass.SEARCH: RateLimitPolicy(
            settings.rate_limit_search_requests, settings.rate_limit_search_window
        ),
    }


def resolve_identifier(subject_id: str | None, ip_address: str | None) -> str:
    """Authenticated requests are counted per account, the rest per client IP."""
    if subject_id:
        return f"user:{subject_id}"
    return f"ip:{ip_address or 'unknown'}"


class CounterStore(Protocol):
    """Atomic check-and-count over a sliding window."""

    async def hit(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> tuple[bool, int, int]:
        """Returns (admitted, count in window, oldest timestamp in window in ms)."""
        ...


class InMemoryCounterStore:
    """Process-local counter store guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._windows: dict[str, deque[int]] = {}
        self._lock = asyncio.Lock()

    async def hit(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> tuple[bool, int, int]:
        async with self._lock:
            window = self._windows.setdefault(key, deque())
            while window and window[0] <= now_ms - window_ms:
                window.popleft()

            admitted = len(window) < limit
            if admitted:
                window.append(now_ms)

            oldest = window[0] if window else now_ms
            return admitted, len(window), oldest


class RedisCounterStore:
    """Sorted-set counter store; one Lua call per check."""

    def __init__(self, redis: Redis):
        self._redis = redis
        self._script = redis.register_script(SLIDING_WINDOW_SCRIPT)

    async def hit(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> tuple[bool, int, int]:
        # Unique member so requests in the same millisecond are all counted
        member = f"{now_ms}:{secrets.token_hex(6)}"
        admitted, count, oldest = await self._script(
            keys=[key],
            args=[now_ms, window_ms, limit, member],
        )
        return bool(int(admitted)), int(count), int(oldest)


class RateLimiter:
    """Per-action-class rate limiter."""

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        store: CounterStore,
        policies: dict[ActionClass, RateLimitPolicy] | None = None,
        audit_log: SecurityAuditLog | None = None,
    ):
        self.store = store
        self.policies = policies or policies_from_settings()
        self.audit_log = audit_log

    def policy_for(self, action_class: ActionClass) -> RateLimitPolicy:
        return self.policies[ActionClass(action_class)]

    async def check(
        self,
        identifier: str,
        action_class: ActionClass,
        now: float | None = None,
        context: RequestContext | None = None,
    ) -> RateLimitResult:
        """Count a request against its budget.

        Args:
            identifier: Account or client key (see ``resolve_identifier``)
            action_class: Budget to charge
            now: Current time in epoch seconds (defaults to the wall clock)
            context: Request metadata for the degraded diagnostic event

        Returns:
            RateLimitResult; ``allowed`` is True when the store is unreachable
        """
        action_class = ActionClass(action_class)
        policy = self.policy_for(action_class)
        now_ms = int((time.time() if now is None else now) * 1000)
        window_ms = policy.window_seconds * 1000
        key = f"{self.KEY_PREFIX}:{action_class.value}:{identifier}"

        try:
            admitted, count, oldest_ms = await self.store.hit(
                key, policy.limit, window_ms, now_ms
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            await self._report_degraded(e, action_class, context)
            return RateLimitResult(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit,
                reset_at=math.ceil((now_ms + window_ms) / 1000),
                retry_after=0,
                degraded=True,
            )

        reset_ms = oldest_ms + window_ms
        return RateLimitResult(
            allowed=admitted,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_at=math.ceil(reset_ms / 1000),
            retry_after=0 if admitted else max(1, math.ceil((reset_ms - now_ms) / 1000)),
        )

    async def enforce(
        self,
        identifier: str,
        action_class: ActionClass,
        context: RequestContext | None = None,
        now: float | None = None,
    ) -> RateLimitResult:
        """Like ``check`` but raises ``RateLimited`` and audits the rejection."""
        context = context or RequestContext()
        result = await self.check(identifier, action_class, now=now, context=context)
        if result.allowed:
            return result

        logger.warning(
            "rate_limit_exceeded",
            action_class=ActionClass(action_class).value,
            identifier=identifier,
            retry_after=result.retry_after,
        )
        if self.audit_log is not None:
            await self.audit_log.record(
                SecurityEventKind.RATE_LIMIT_EXCEEDED,
                context.subject_id,
                {
                    "action_class": ActionClass(action_class).value,
                    "limit": result.limit,
                    "retry_after": result.retry_after,
                },
                context,
            )
        raise RateLimited(
            limit=result.limit,
            remaining=result.remaining,
            reset_at=result.reset_at,
            retry_after=result.retry_after,
            locale=context.locale,
        )

    async def _report_degraded(
        self,
        error: Exception,
        action_class: ActionClass,
        context: RequestContext | None,
    ) -> None:
        logger.warning(
            "rate_limit_degraded",
            action_class=action_class.value,
            error=type(error).__name__,
        )
        capture_security_error(
            error,
            component="rate_limiter",
            level="warning",
            extra={"action_class": action_class.value},
        )
        if self.audit_log is not None:
            await self.audit_log.record(
                SecurityEventKind.RATE_LIMIT_DEGRADED,
                context.subject_id if context else None,
                {"action_class": action_class.value, "error": type(error).__name__},
                context,
            )
