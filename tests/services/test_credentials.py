"""Tests for credential stores and backup code consumption."""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from lexauth.services.backup_codes import BackupCodeSet
from lexauth.services.credentials import (
    InMemoryCredentialStore,
    SqlCredentialStore,
    consume_backup_code,
    normalize_email,
)
from lexauth.utils.errors import StorageUnavailable

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestInMemoryCredentialStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_lookup_by_email_ignores_case(self, make_account, credential_store):
        account, _ = make_account(email="Ana.Horvat@Odvjetnik.hr")

        found = await credential_store.get_by_email("  ana.horvat@odvjetnik.HR ")

        assert found == account

    @pytest.mark.asyncio
    async def test_lookup_unknown(self, credential_store):
        assert await credential_store.get_by_email("nobody@odvjetnik.hr") is None
        assert await credential_store.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_enrollment_lifecycle(self, make_account, credential_store, vault):
        account, _ = make_account()
        _, pending_codes = vault.generate()

        await credential_store.save_pending_two_factor(account.account_id, "SECRET", pending_codes)
        pending = await credential_store.get_by_id(account.account_id)
        assert pending.two_factor.pending_secret == "SECRET"
        assert pending.two_factor_enabled is False

        await credential_store.enable_two_factor(account.account_id, NOW)
        enabled = await credential_store.get_by_id(account.account_id)
        assert enabled.two_factor_enabled is True
        assert enabled.two_factor.secret == "SECRET"
        assert enabled.two_factor.pending_secret is None
        assert enabled.two_factor.verified_at == NOW
        assert enabled.two_factor.backup_codes.entries == pending_codes.entries

        await credential_store.disable_two_factor(account.account_id)
        disabled = await credential_store.get_by_id(account.account_id)
        assert disabled.two_factor_enabled is False
        assert disabled.two_factor.secret is None
        assert disabled.two_factor.backup_codes.total == 0

    @pytest.mark.asyncio
    async def test_enable_without_pending_is_noop(self, make_account, credential_store):
        account, _ = make_account()

        await credential_store.enable_two_factor(account.account_id, NOW)

        assert (await credential_store.get_by_id(account.account_id)).two_factor_enabled is False

    @pytest.mark.asyncio
    async def test_swap_requires_expected_version(self, make_account, credential_store, vault):
        account, codes = make_account(two_factor=True)
        current = account.two_factor.backup_codes
        _, updated = vault.verify_and_consume(current, codes[0], NOW)

        assert await credential_store.swap_backup_codes(
            account.account_id, current.version + 5, updated, NOW
        ) is False
        assert await credential_store.swap_backup_codes(
            account.account_id, current.version, updated, NOW
        ) is True
        # Same expected version again loses
        assert await credential_store.swap_backup_codes(
            account.account_id, current.version, updated, NOW
        ) is False

        stored = (await credential_store.get_by_id(account.account_id)).two_factor.backup_codes
        assert stored.remaining == 7
        assert stored.version == current.version + 1

    @pytest.mark.asyncio
    async def test_replace_bumps_version(self, make_account, credential_store, vault):
        account, _ = make_account(two_factor=True)
        old_version = account.two_factor.backup_codes.version
        _, fresh = vault.regenerate()

        version = await credential_store.replace_backup_codes(account.account_id, fresh)

        stored = (await credential_store.get_by_id(account.account_id)).two_factor.backup_codes
        assert version == old_version + 1
        assert stored.version == version
        assert stored.entries == fresh.entries


class TestConsumeBackupCode:
    """Tests for verify-then-compare-and-set consumption."""

    @pytest.mark.asyncio
    async def test_consumes_once(self, make_account, credential_store, vault):
        account, codes = make_account(two_factor=True)

        first = await consume_backup_code(credential_store, vault, account.account_id, codes[0], NOW)
        second = await consume_backup_code(credential_store, vault, account.account_id, codes[0], NOW)

        assert first is not None
        assert first.remaining == 7
        assert second is None

    @pytest.mark.asyncio
    async def test_concurrent_consumption_single_winner(self, make_account, credential_store, vault):
        """Two requests presenting the same code: exactly one succeeds."""
        account, codes = make_account(two_factor=True)

        results = await asyncio.gather(*[
            consume_backup_code(credential_store, vault, account.account_id, codes[2], NOW)
            for _ in range(5)
        ])

        assert sum(1 for r in results if r is not None) == 1
        stored = (await credential_store.get_by_id(account.account_id)).two_factor.backup_codes
        assert stored.remaining == 7

    @pytest.mark.asyncio
    async def test_different_codes_concurrently_both_succeed(self, make_account, credential_store, vault):
        account, codes = make_account(two_factor=True)

        results = await asyncio.gather(
            consume_backup_code(credential_store, vault, account.account_id, codes[0], NOW),
            consume_backup_code(credential_store, vault, account.account_id, codes[1], NOW),
        )

        assert all(r is not None for r in results)
        stored = (await credential_store.get_by_id(account.account_id)).two_factor.backup_codes
        assert stored.remaining == 6

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, make_account, vault):
        account, codes = make_account(two_factor=True)
        store = MagicMock()
        store.get_by_id = AsyncMock(return_value=account)
        store.swap_backup_codes = AsyncMock(return_value=False)

        result = await consume_backup_code(store, vault, account.account_id, codes[0], NOW)

        assert result is None
        assert store.swap_backup_codes.await_count == 3

    @pytest.mark.asyncio
    async def test_account_without_two_factor(self, make_account, credential_store, vault):
        account, _ = make_account()

        assert await consume_backup_code(
            credential_store, vault, account.account_id, "ABCD1234", NOW
        ) is None


def _result(value=None, rowcount=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    result.rowcount = rowcount
    return result


class TestSqlCredentialStore:
    """Tests for the SQL store with a mocked session."""

    @pytest.fixture
    def db(self):
        session = MagicMock()
        session.execute = AsyncMock()
        session.flush = AsyncMock()
        session.add = MagicMock()
        return session

    @pytest.fixture
    def store(self, db):
        return SqlCredentialStore(db)

    @pytest.fixture
    def user_row(self, vault):
        _, codes = vault.generate()
        return SimpleNamespace(
            id="acc-1",
            email="ana.horvat@odvjetnik.hr",
            organization_id="org-1",
            organization_name="Odvjetnički ured Horvat",
            password_hash="$2b$04$hash",
            is_active=True,
            two_factor=SimpleNamespace(
                is_enabled=True,
                secret="JBSWY3DPEHPK3PXP",
                pending_secret=None,
                verified_at=NOW,
                backup_codes=codes.to_list(),
                pending_backup_codes=None,
                version=3,
            ),
        )

    @pytest.mark.asyncio
    async def test_get_by_email_maps_row(self, store, db, user_row):
        db.execute.return_value = _result(user_row)

        account = await store.get_by_email("Ana.Horvat@odvjetnik.hr")

        assert account.account_id == "acc-1"
        assert account.organization_name == "Odvjetnički ured Horvat"
        assert account.two_factor_enabled is True
        assert account.two_factor.backup_codes.version == 3
        assert account.two_factor.backup_codes.remaining == 8

    @pytest.mark.asyncio
    async def test_get_by_id_without_two_factor_row(self, store, db, user_row):
        user_row.two_factor = None
        db.execute.return_value = _result(user_row)

        account = await store.get_by_id("acc-1")

        assert account.two_factor_enabled is False
        assert account.two_factor.backup_codes == BackupCodeSet()

    @pytest.mark.asyncio
    async def test_get_missing(self, store, db):
        db.execute.return_value = _result(None)

        assert await store.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_swap_reports_rowcount(self, store, db):
        db.execute.return_value = _result(rowcount=1)
        assert await store.swap_backup_codes("acc-1", 3, BackupCodeSet(), NOW) is True

        db.execute.return_value = _result(rowcount=0)
        assert await store.swap_backup_codes("acc-1", 3, BackupCodeSet(), NOW) is False

    @pytest.mark.asyncio
    async def test_replace_returns_new_version(self, store, db):
        db.execute.return_value = _result(4)

        assert await store.replace_backup_codes("acc-1", BackupCodeSet()) == 4

    @pytest.mark.asyncio
    async def test_save_pending_creates_row(self, store, db, vault):
        db.execute.return_value = _result(None)
        _, codes = vault.generate()

        await store.save_pending_two_factor("acc-1", "PENDING", codes)

        row = db.add.call_args.args[0]
        assert row.user_id == "acc-1"
        assert row.pending_secret == "PENDING"
        assert row.pending_backup_codes == codes.to_list()
        assert row.is_enabled is False
        db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_enable_promotes_pending(self, store, db):
        row = SimpleNamespace(
            pending_secret="PENDING",
            pending_backup_codes=[{"hash": "a" * 64, "consumed_at": None}],
            secret=None,
            backup_codes=None,
            is_enabled=False,
            verified_at=None,
            version=2,
        )
        db.execute.return_value = _result(row)

        await store.enable_two_factor("acc-1", NOW)

        assert row.secret == "PENDING"
        assert row.backup_codes == [{"hash": "a" * 64, "consumed_at": None}]
        assert row.pending_secret is None
        assert row.pending_backup_codes is None
        assert row.is_enabled is True
        assert row.verified_at == NOW
        assert row.version == 3

    @pytest.mark.asyncio
    async def test_database_error_fails_closed(self, store, db):
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))

        with pytest.raises(StorageUnavailable):
            await store.get_by_email("ana.horvat@odvjetnik.hr")
        with pytest.raises(StorageUnavailable):
            await store.swap_backup_codes("acc-1", 3, BackupCodeSet(), NOW)
        with pytest.raises(StorageUnavailable):
            await store.disable_two_factor("acc-1")


def test_normalize_email():
    assert normalize_email(" Ana@Odvjetnik.HR ") == "ana@odvjetnik.hr"
    assert normalize_email(None) == ""
