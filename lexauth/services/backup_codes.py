"""
Backup code vault.

One-time recovery codes for accounts whose authenticator device is
unavailable. Only SHA-256 digests are stored; plaintext is handed to the
caller exactly once when a set is generated.

The vault itself is pure. ``verify_and_consume`` returns a new set with a
bumped ``version``; callers persist it with a compare-and-set on that
version so two requests presenting the same code cannot both succeed.
"""

import hashlib
import hmac
import re
import secrets
import string
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
BACKUP_CODE_LENGTH = 8
DEFAULT_BACKUP_CODE_COUNT = 8

BACKUP_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")


def normalize_backup_code(code: Optional[str]) -> str:
    """Uppercase and drop spaces/dashes ("abcd-1234" -> "ABCD1234")."""
    if not code:
        return ""
    return "".join(code.split()).replace("-", "").upper()


def hash_backup_code(code: str) -> str:
    """SHA-256 hex digest of the normalized code."""
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


@dataclass(frozen=True)
class BackupCodeEntry:
    """A single stored backup code."""

    code_hash: str
    consumed_at: Optional[datetime] = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.code_hash,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupCodeEntry":
        consumed_at = data.get("consumed_at")
        return cls(
            code_hash=data["hash"],
            consumed_at=datetime.fromisoformat(consumed_at) if consumed_at else None,
        )


@dataclass(frozen=True)
class BackupCodeSet:
    """Ordered, fixed-size set of stored backup codes."""

    entries: tuple[BackupCodeEntry, ...] = field(default_factory=tuple)
    version: int = 0

    @property
    def remaining(self) -> int:
        """Number of codes not yet used."""
        return sum(1 for entry in self.entries if not entry.consumed)

    @property
    def total(self) -> int:
        return len(self.entries)

    def to_list(self) -> list[dict[str, Any]]:
        """JSON-serializable form for storage."""
        return [entry.to_dict() for entry in self.entries]

    @classmethod
    def from_list(cls, data: Optional[list[dict[str, Any]]], version: int = 0) -> "BackupCodeSet":
        return cls(
            entries=tuple(BackupCodeEntry.from_dict(item) for item in data or []),
            version=version,
        )


class BackupCodeVault:
    """Generates, verifies and consumes one-time backup codes."""

    def __init__(self, count: int = DEFAULT_BACKUP_CODE_COUNT):
        self.count = count

    def generate(self, count: Optional[int] = None) -> tuple[list[str], BackupCodeSet]:
        """
        Generate a fresh set of backup codes.

        Returns:
            Tuple of (plaintext codes for one-time display, stored set)
        """
        count = count or self.count
        codes = [
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(count)
        ]
        stored = BackupCodeSet(
            entries=tuple(BackupCodeEntry(code_hash=hash_backup_code(code)) for code in codes),
        )
        return codes, stored

    def regenerate(self, count: Optional[int] = None) -> tuple[list[str], BackupCodeSet]:
        """
        Discard the existing set entirely and generate a new one.

        Nothing from the previous set carries over, so every unused old code
        stops verifying.
        """
        return self.generate(count)

    def is_valid_format(self, code: Optional[str]) -> bool:
        return bool(BACKUP_CODE_PATTERN.match(normalize_backup_code(code)))

    def verify_and_consume(
        self,
        stored_set: BackupCodeSet,
        submitted_code: Optional[str],
        now: Optional[datetime] = None,
    ) -> tuple[bool, BackupCodeSet]:
        """
        Verify a backup code and mark it consumed.

        Args:
            stored_set: The account's current set
            submitted_code: Code typed by the user (any case, dashes allowed)
            now: Consumption timestamp

        Returns:
            Tuple of (ok, updated set). On failure the input set is returned
            unchanged.
        """
        code = normalize_backup_code(submitted_code)
        if not BACKUP_CODE_PATTERN.match(code):
            return False, stored_set

        code_hash = hash_backup_code(code)

        # Scan every entry so timing does not depend on the match position
        match_index: Optional[int] = None
        for i, entry in enumerate(stored_set.entries):
            if hmac.compare_digest(code_hash, entry.code_hash) and not entry.consumed:
                match_index = i

        if match_index is None:
            return False, stored_set

        consumed_at = now or datetime.now(timezone.utc)
        entries = list(stored_set.entries)
        entries[match_index] = replace(entries[match_index], consumed_at=consumed_at)
        return True, BackupCodeSet(entries=tuple(entries), version=stored_set.version + 1)
