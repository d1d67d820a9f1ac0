"""Tests for credential redaction in log events."""

from lexauth.logging_config import REDACTED, redact_credentials


class TestRedactCredentials:
    def test_credential_fields_are_masked(self):
        event = {
            "event": "login_failed",
            "password": "Tajna-lozinka-2024",
            "code": "123456",
            "Authorization": "Bearer abc",
            "account_id": "acc-1",
        }

        result = redact_credentials(None, "info", event)

        assert result["password"] == REDACTED
        assert result["code"] == REDACTED
        assert result["Authorization"] == REDACTED
        assert result["account_id"] == "acc-1"
        assert result["event"] == "login_failed"

    def test_events_without_credentials_pass_through(self):
        event = {"event": "request_completed", "status_code": 200}

        assert redact_credentials(None, "info", dict(event)) == event
