"""Password hashing, bearer tokens and random identifiers.

Passwords are SHA-256 digested before bcrypt so inputs longer than bcrypt's
72-byte limit still count in full. Access tokens are issued only after every
required factor has been checked.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from lexauth.config import get_settings
from lexauth.logging_config import get_logger

settings = get_settings()
logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REQUIRED_CLAIMS = {"require_sub": True, "require_iat": True, "require_exp": True}

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)


def _digest(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    return pwd_context.hash(_digest(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """True on match. A corrupt stored hash is a mismatch, not an error."""
    try:
        return pwd_context.verify(_digest(plain_password), hashed_password)
    except (ValueError, TypeError) as e:
        logger.warning("password_hash_unreadable", error_type=type(e).__name__)
        return False


@lru_cache(maxsize=1)
def _decoy_hash() -> str:
    return hash_password(secrets.token_urlsafe(16))


def burn_password_check(plain_password: str) -> None:
    """Do one bcrypt verification against a decoy hash.

    Used when there is no real hash to check, so unknown accounts take as
    long to reject as wrong passwords.
    """
    verify_password(plain_password, _decoy_hash())


def warm_password_decoy() -> None:
    """Build the decoy hash at startup so the first unknown-account login is not slower."""
    _decoy_hash()


class TokenError(Exception):
    """A token that was well-formed but is no longer acceptable."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def create_access_token(
    account_id: str,
    additional_claims: dict[str, Any] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)

    claims: dict[str, Any] = {
        **(additional_claims or {}),
        "sub": account_id,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> dict[str, Any] | None:
    """Decode a bearer token.

    Returns the claims, or ``None`` for anything forged, malformed or of the
    wrong type. Raises ``TokenError("TOKEN_EXPIRED")`` for an expired token so
    the client can tell it to log in again.
    """
    if not token:
        return None

    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options=REQUIRED_CLAIMS,
        )
    except ExpiredSignatureError as e:
        raise TokenError("TOKEN_EXPIRED", "Token has expired") from e
    except JWTError as e:
        logger.debug("access_token_rejected", error_type=type(e).__name__)
        return None

    if claims.get("type") != ACCESS_TOKEN_TYPE:
        return None
    return claims


def create_token_response(account_id: str) -> dict[str, Any]:
    return {
        "access_token": create_access_token(account_id),
        "token_type": "Bearer",
        "expires_in": settings.jwt_access_token_expire_minutes * 60,
    }


def generate_challenge_id() -> str:
    """256-bit URL-safe login challenge id."""
    return secrets.token_urlsafe(32)


def mask_identifier(value: str, visible: int = 8) -> str:
    return value[:visible] + "****"
