"""iLegal credential verification: password, TOTP and backup-code login."""

__version__ = "1.0.0"
