"""Pending second-factor login challenges.

A challenge is issued after a correct password for an account with 2FA
enabled. It is single-use, expires after a fixed TTL and is destroyed early
once the failed-attempt ceiling is reached.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from lexauth.logging_config import get_logger
from lexauth.utils.errors import StorageUnavailable
from lexauth.utils.security import generate_challenge_id, mask_identifier

logger = get_logger(__name__)

# Increment attempts; delete the challenge at the ceiling.
# Returns the new attempt count, or -1 if the challenge does not exist.
RECORD_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
local attempts = redis.call('HINCRBY', KEYS[1], 'attempts', 1)
if attempts >= tonumber(ARGV[1]) then
    redis.call('DEL', KEYS[1])
end
return attempts
"""


@dataclass(frozen=True)
class LoginChallenge:
    """Pending second-factor state for one login."""

    challenge_id: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class ChallengeStore(Protocol):
    """Storage for login challenges. All operations are atomic per challenge."""

    async def create(
        self, account_id: str, ttl_seconds: int, now: datetime | None = None
    ) -> LoginChallenge:
        ...

    async def get(self, challenge_id: str, now: datetime | None = None) -> LoginChallenge | None:
        """Return the challenge, or None if unknown, consumed or expired."""
        ...

    async def record_failure(self, challenge_id: str, max_attempts: int) -> int | None:
        """Count a failed attempt; returns attempts so far or None if gone."""
        ...

    async def consume(self, challenge_id: str) -> bool:
        """Destroy the challenge; True only for the caller that destroyed it."""
        ...


class InMemoryChallengeStore:
    """Process-local challenge store for tests and single-process runs."""

    def __init__(self) -> None:
        self._challenges: dict[str, LoginChallenge] = {}
        self._lock = asyncio.Lock()

    async def create(
        self, account_id: str, ttl_seconds: int, now: datetime | None = None
    ) -> LoginChallenge:
        issued_at = now or datetime.now(timezone.utc)
        challenge = LoginChallenge(
            challenge_id=generate_challenge_id(),
            account_id=account_id,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
        )
        async with self._lock:
            self._challenges[challenge.challenge_id] = challenge
        return challenge

    async def get(self, challenge_id: str, now: datetime | None = None) -> LoginChallenge | None:
        async with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None:
                return None
            if challenge.is_expired(now):
                del self._challenges[challenge_id]
                return None
            return challenge

    async def record_failure(self, challenge_id: str, max_attempts: int) -> int | None:
        async with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None:
                return None
            attempts = challenge.attempts + 1
            if attempts >= max_attempts:
                del self._challenges[challenge_id]
            else:
                self._challenges[challenge_id] = replace(challenge, attempts=attempts)
            return attempts

    async def consume(self, challenge_id: str) -> bool:
        async with self._lock:
            return self._challenges.pop(challenge_id, None) is not None


class RedisChallengeStore:
    """Challenges as Redis hashes with a storage-level TTL."""

    KEY_PREFIX = "login_challenge"

    def __init__(self, redis: Redis):
        self._redis = redis
        self._record_failure = redis.register_script(RECORD_FAILURE_SCRIPT)

    def _key(self, challenge_id: str) -> str:
        return f"{self.KEY_PREFIX}:{challenge_id}"

    def _unavailable(self, operation: str, error: Exception) -> StorageUnavailable:
        logger.error(
            "challenge_store_unavailable",
            operation=operation,
            error=type(error).__name__,
        )
        return StorageUnavailable()

    async def create(
        self, account_id: str, ttl_seconds: int, now: datetime | None = None
    ) -> LoginChallenge:
        issued_at = now or datetime.now(timezone.utc)
        challenge = LoginChallenge(
            challenge_id=generate_challenge_id(),
            account_id=account_id,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
        )
        key = self._key(challenge.challenge_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "account_id": challenge.account_id,
                        "issued_at": challenge.issued_at.isoformat(),
                        "expires_at": challenge.expires_at.isoformat(),
                        "attempts": 0,
                    },
                )
                pipe.expire(key, ttl_seconds)
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise self._unavailable("create", e) from e

        logger.debug(
            "login_challenge_created",
            challenge=mask_identifier(challenge.challenge_id),
            account_id=account_id,
        )
        return challenge

    async def get(self, challenge_id: str, now: datetime | None = None) -> LoginChallenge | None:
        try:
            data = await self._redis.hgetall(self._key(challenge_id))
        except (RedisError, OSError) as e:
            raise self._unavailable("get", e) from e

        if not data:
            return None

        challenge = LoginChallenge(
            challenge_id=challenge_id,
            account_id=data["account_id"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
        )
        if challenge.is_expired(now):
            return None
        return challenge

    async def record_failure(self, challenge_id: str, max_attempts: int) -> int | None:
        try:
            attempts = await self._record_failure(
                keys=[self._key(challenge_id)],
                args=[max_attempts],
            )
        except (RedisError, OSError) as e:
            raise self._unavailable("record_failure", e) from e

        attempts = int(attempts)
        return None if attempts < 0 else attempts

    async def consume(self, challenge_id: str) -> bool:
        try:
            deleted = await self._redis.delete(self._key(challenge_id))
        except (RedisError, OSError) as e:
            raise self._unavailable("consume", e) from e
        return deleted == 1
