"""Tests for TwoFactorEnrollmentService."""

from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from lexauth.services.audit import SecurityEventKind
from lexauth.services.enrollment import TwoFactorEnrollmentService
from lexauth.utils.errors import (
    AccountInactive,
    AuthRequired,
    InvalidCodeFormat,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorNotSetUp,
)


def wrong_code(code: str) -> str:
    return f"{(int(code) + 500_000) % 1_000_000:06d}"


class TestEnrollment:
    """SETUP -> VERIFY -> COMPLETE."""

    @pytest.mark.asyncio
    async def test_full_enrollment(
        self, enrollment_service, make_account, credential_store, totp_engine, clock, audit_sink
    ):
        account, _ = make_account()

        setup = await enrollment_service.start_enrollment(account.account_id)

        assert len(setup.backup_codes) == 8
        assert len(set(setup.backup_codes)) == 8
        pending = await credential_store.get_by_id(account.account_id)
        assert pending.two_factor_enabled is False
        assert pending.two_factor.pending_secret == setup.manual_entry_secret

        code = totp_engine.code_at(setup.manual_entry_secret, clock.now)
        ok = await enrollment_service.verify_enrollment(account.account_id, code)

        assert ok is True
        enabled = await credential_store.get_by_id(account.account_id)
        assert enabled.two_factor_enabled is True
        assert enabled.two_factor.secret == setup.manual_entry_secret
        assert enabled.two_factor.verified_at == clock.now
        assert enabled.two_factor.backup_codes.remaining == 8
        events = audit_sink.of_kind(SecurityEventKind.TWO_FACTOR_ENABLED)
        assert len(events) == 1
        assert events[0].metadata == {"backup_codes_total": 8}

    @pytest.mark.asyncio
    async def test_setup_codes_work_after_enrollment(
        self, enrollment_service, make_account, credential_store, vault, totp_engine, clock
    ):
        account, _ = make_account()
        setup = await enrollment_service.start_enrollment(account.account_id)
        await enrollment_service.verify_enrollment(
            account.account_id, totp_engine.code_at(setup.manual_entry_secret, clock.now)
        )

        stored = (await credential_store.get_by_id(account.account_id)).two_factor.backup_codes
        ok, _ = vault.verify_and_consume(stored, setup.backup_codes[0], clock.now)

        assert ok is True

    @pytest.mark.asyncio
    async def test_provisioning_uri_uses_organization_issuer(self, enrollment_service, make_account):
        account, _ = make_account(organization_name="Odvjetnički ured Horvat")

        setup = await enrollment_service.start_enrollment(account.account_id)

        assert setup.issuer == "iLegal (Odvjetnički ured Horvat)"
        parsed = pyotp.parse_uri(setup.provisioning_uri)
        assert parsed.secret == setup.manual_entry_secret
        assert parsed.issuer == "iLegal (Odvjetnički ured Horvat)"
        assert parsed.name == account.email

    @pytest.mark.asyncio
    async def test_issuer_without_organization(self, enrollment_service, make_account):
        account, _ = make_account(organization_name=None)

        setup = await enrollment_service.start_enrollment(account.account_id)

        assert setup.issuer == "iLegal"

    @pytest.mark.asyncio
    async def test_wrong_code_is_retryable(
        self, enrollment_service, make_account, credential_store, totp_engine, clock, audit_sink
    ):
        account, _ = make_account()
        setup = await enrollment_service.start_enrollment(account.account_id)
        code = totp_engine.code_at(setup.manual_entry_secret, clock.now)

        first = await enrollment_service.verify_enrollment(account.account_id, wrong_code(code))
        pending = await credential_store.get_by_id(account.account_id)
        second = await enrollment_service.verify_enrollment(account.account_id, code)

        assert first is False
        assert pending.two_factor_enabled is False
        assert pending.two_factor.pending_secret == setup.manual_entry_secret
        assert second is True
        failures = audit_sink.of_kind(SecurityEventKind.VALIDATION_FAILED)
        assert failures[0].metadata == {"operation": "two_factor_enable", "reason": "invalid_code"}

    @pytest.mark.asyncio
    async def test_restart_replaces_pending_secret(
        self, enrollment_service, make_account, totp_engine, clock
    ):
        account, _ = make_account()
        first = await enrollment_service.start_enrollment(account.account_id)
        second = await enrollment_service.start_enrollment(account.account_id)

        stale = totp_engine.code_at(first.manual_entry_secret, clock.now)
        fresh = totp_engine.code_at(second.manual_entry_secret, clock.now)

        if stale != fresh:
            assert await enrollment_service.verify_enrollment(account.account_id, stale) is False
        assert await enrollment_service.verify_enrollment(account.account_id, fresh) is True

    @pytest.mark.asyncio
    async def test_verify_without_setup(self, enrollment_service, make_account):
        account, _ = make_account()

        with pytest.raises(TwoFactorNotSetUp):
            await enrollment_service.verify_enrollment(account.account_id, "123456")

    @pytest.mark.asyncio
    async def test_verify_rejects_malformed_code(self, enrollment_service, make_account):
        account, _ = make_account()
        await enrollment_service.start_enrollment(account.account_id)

        with pytest.raises(InvalidCodeFormat):
            await enrollment_service.verify_enrollment(account.account_id, "ABCD1234")

    @pytest.mark.asyncio
    async def test_start_when_already_enabled(self, enrollment_service, make_account):
        account, _ = make_account(two_factor=True)

        with pytest.raises(TwoFactorAlreadyEnabled) as exc_info:
            await enrollment_service.start_enrollment(account.account_id)

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_account(self, enrollment_service):
        with pytest.raises(AuthRequired):
            await enrollment_service.start_enrollment("missing")

    @pytest.mark.asyncio
    async def test_inactive_account(self, enrollment_service, make_account):
        account, _ = make_account(is_active=False)

        with pytest.raises(AccountInactive):
            await enrollment_service.start_enrollment(account.account_id)


class TestDisableTwoFactor:
    """Disable requires a currently valid code."""

    @pytest.mark.asyncio
    async def test_disable_with_totp(
        self, enrollment_service, make_account, credential_store, totp_engine, clock, audit_sink
    ):
        account, _ = make_account(two_factor=True)
        code = totp_engine.code_at(account.two_factor.secret, clock.now)

        ok = await enrollment_service.disable_two_factor(account.account_id, code)

        assert ok is True
        disabled = await credential_store.get_by_id(account.account_id)
        assert disabled.two_factor_enabled is False
        assert disabled.two_factor.secret is None
        assert disabled.two_factor.backup_codes.total == 0
        events = audit_sink.of_kind(SecurityEventKind.TWO_FACTOR_DISABLED)
        assert events[0].metadata == {"is_backup_code": False}

    @pytest.mark.asyncio
    async def test_disable_with_backup_code(self, enrollment_service, make_account, audit_sink):
        account, codes = make_account(two_factor=True)

        ok = await enrollment_service.disable_two_factor(account.account_id, codes[4])

        assert ok is True
        assert audit_sink.of_kind(SecurityEventKind.TWO_FACTOR_DISABLED)[0].metadata == {
            "is_backup_code": True
        }

    @pytest.mark.asyncio
    async def test_invalid_code_leaves_two_factor_intact(
        self, enrollment_service, make_account, credential_store, totp_engine, clock, audit_sink
    ):
        account, _ = make_account(two_factor=True)
        code = totp_engine.code_at(account.two_factor.secret, clock.now)

        ok = await enrollment_service.disable_two_factor(account.account_id, wrong_code(code))

        assert ok is False
        after = await credential_store.get_by_id(account.account_id)
        assert after.two_factor_enabled is True
        assert after.two_factor.secret == account.two_factor.secret
        assert after.two_factor.backup_codes.remaining == 8
        assert SecurityEventKind.TWO_FACTOR_DISABLED not in audit_sink.kinds()
        assert audit_sink.of_kind(SecurityEventKind.VALIDATION_FAILED)[0].metadata == {
            "operation": "two_factor_disable",
            "reason": "invalid_code",
        }

    @pytest.mark.asyncio
    async def test_unknown_backup_code_leaves_two_factor_intact(
        self, enrollment_service, make_account, credential_store
    ):
        account, _ = make_account(two_factor=True)

        ok = await enrollment_service.disable_two_factor(account.account_id, "ZZZZ9999")

        assert ok is False
        assert (await credential_store.get_by_id(account.account_id)).two_factor_enabled is True

    @pytest.mark.asyncio
    async def test_malformed_code(self, enrollment_service, make_account):
        account, _ = make_account(two_factor=True)

        with pytest.raises(InvalidCodeFormat):
            await enrollment_service.disable_two_factor(account.account_id, "12")

    @pytest.mark.asyncio
    async def test_disable_when_not_enabled(self, enrollment_service, make_account):
        account, _ = make_account()

        with pytest.raises(TwoFactorNotEnabled):
            await enrollment_service.disable_two_factor(account.account_id, "123456")


class TestBackupCodeRegeneration:
    @pytest.mark.asyncio
    async def test_regenerate_invalidates_old_codes(
        self, enrollment_service, make_account, credential_store, vault, clock, audit_sink
    ):
        account, old_codes = make_account(two_factor=True)

        new_codes = await enrollment_service.regenerate_backup_codes(account.account_id)

        assert len(new_codes) == 8
        assert set(new_codes).isdisjoint(old_codes)
        stored = (await credential_store.get_by_id(account.account_id)).two_factor.backup_codes
        assert stored.remaining == 8
        for code in old_codes:
            ok, _ = vault.verify_and_consume(stored, code, clock.now)
            assert ok is False
        event = audit_sink.of_kind(SecurityEventKind.BACKUP_CODES_REGENERATED)[0]
        assert event.metadata == {"previous_remaining": 8, "backup_codes_total": 8}

    @pytest.mark.asyncio
    async def test_regenerate_requires_two_factor(self, enrollment_service, make_account):
        account, _ = make_account()

        with pytest.raises(TwoFactorNotEnabled):
            await enrollment_service.regenerate_backup_codes(account.account_id)


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_enabled(self, enrollment_service, make_account, credential_store, vault):
        account, codes = make_account(two_factor=True)
        current = account.two_factor.backup_codes
        _, updated = vault.verify_and_consume(current, codes[0], datetime.now(timezone.utc))
        await credential_store.swap_backup_codes(
            account.account_id, current.version, updated, datetime.now(timezone.utc)
        )

        status = await enrollment_service.get_status(account.account_id)

        assert status.enabled is True
        assert status.pending is False
        assert status.verified_at == account.two_factor.verified_at
        assert status.backup_codes_remaining == 7
        assert status.backup_codes_total == 8

    @pytest.mark.asyncio
    async def test_status_pending(self, enrollment_service, make_account):
        account, _ = make_account()
        await enrollment_service.start_enrollment(account.account_id)

        status = await enrollment_service.get_status(account.account_id)

        assert status.enabled is False
        assert status.pending is True
        assert status.backup_codes_remaining == 0


class TestDriftWindowSetting:
    @pytest.mark.asyncio
    async def test_zero_window_rejects_previous_step(
        self, make_account, credential_store, audit_log, settings, clock, totp_engine
    ):
        account, _ = make_account()
        service = TwoFactorEnrollmentService(
            credentials=credential_store,
            audit_log=audit_log,
            settings=settings.model_copy(update={"totp_valid_window": 0}),
            clock=clock,
        )
        setup = await service.start_enrollment(account.account_id)
        previous = totp_engine.code_at(setup.manual_entry_secret, clock.now - timedelta(seconds=30))
        current = totp_engine.code_at(setup.manual_entry_secret, clock.now)

        assert await service.verify_enrollment(account.account_id, previous) is False
        assert await service.verify_enrollment(account.account_id, current) is True
