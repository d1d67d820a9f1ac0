"""
Time-step code engine (TOTP, RFC 6238).

Generates secrets and provisioning URIs for authenticator apps and verifies
six-digit codes with a bounded clock-drift tolerance. Pure functions of
(secret, time, code): nothing here touches storage.
"""
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import pyotp

from lexauth.logging_config import get_logger

logger = get_logger(__name__)

TOTP_CODE_PATTERN = re.compile(r"^\d{6}$")

Timestamp = Union[datetime, float, int]


@dataclass
class TOTPConfig:
    """Configuration for the code engine."""
    # TOTP settings
    time_step: int = 30  # seconds
    digits: int = 6

    # Secret length in Base32 characters (32 chars = 160 bits)
    secret_length: int = 32

    # Time window tolerance (number of time steps)
    # ±1 step = ±30 seconds of drift between server and authenticator
    valid_window: int = 1


def _to_timestamp(now: Optional[Timestamp]) -> float:
    if now is None:
        return time.time()
    if isinstance(now, datetime):
        return now.timestamp()
    return float(now)


def normalize_totp_code(code: Optional[str]) -> str:
    """Strip whitespace authenticator apps insert for readability ("123 456")."""
    if not code:
        return ""
    return "".join(code.split())


class TOTPEngine:
    """
    TOTP code engine.

    Features:
    - Base32 secret generation
    - otpauth:// provisioning URI for QR rendering
    - Code verification at now-step, now, now+step
    """

    def __init__(self, config: Optional[TOTPConfig] = None):
        self.config = config or TOTPConfig()

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self.config.digits,
            interval=self.config.time_step,
        )

    def generate_secret(self) -> str:
        """Generate a new cryptographically random Base32 secret."""
        return pyotp.random_base32(length=self.config.secret_length)

    def provisioning_uri(self, secret: str, account_label: str, issuer_label: str) -> str:
        """
        Build the otpauth:// URI for authenticator apps.

        Format:
        otpauth://totp/Issuer:account?secret=XXX&issuer=Issuer&digits=6&period=30

        Args:
            secret: The TOTP secret
            account_label: Shown as the account name (usually the email)
            issuer_label: Shown as the issuer

        Returns:
            otpauth:// URI string
        """
        return self._totp(secret).provisioning_uri(
            name=account_label,
            issuer_name=issuer_label,
        )

    def is_valid_format(self, code: Optional[str]) -> bool:
        """Check the six-digit shape without any cryptography."""
        return bool(TOTP_CODE_PATTERN.match(normalize_totp_code(code)))

    def verify_code(
        self,
        secret: Optional[str],
        submitted_code: Optional[str],
        now: Optional[Timestamp] = None,
    ) -> bool:
        """
        Verify a TOTP code.

        The format check runs first; a malformed code is rejected before any
        HMAC is computed.

        Args:
            secret: The account's TOTP secret
            submitted_code: The code to verify
            now: Verification time (defaults to the current time)

        Returns:
            True if the code matches within the drift window
        """
        code = normalize_totp_code(submitted_code)
        if not TOTP_CODE_PATTERN.match(code):
            return False
        if not secret:
            return False

        try:
            return self._totp(secret).verify(
                code,
                for_time=_to_timestamp(now),
                valid_window=self.config.valid_window,
            )
        except ValueError as e:
            # Corrupt Base32 secret
            logger.warning("totp_secret_invalid", error=type(e).__name__)
            return False

    def code_at(self, secret: str, now: Optional[Timestamp] = None) -> str:
        """
        Get the TOTP code for a point in time.

        Used by tests and diagnostics.
        """
        return self._totp(secret).at(_to_timestamp(now))

    def time_remaining(self, now: Optional[Timestamp] = None) -> int:
        """Seconds left in the current time step."""
        step = self.config.time_step
        return step - int(_to_timestamp(now)) % step

