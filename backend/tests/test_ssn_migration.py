"""Tests for SSN batch migrations (services/ssn_migration.py).

Covers:
- Classification by scheme marker and by content
- Plaintext → encrypted migration
- Legacy → lookup migration, with and without purging the legacy column
- One bad row never aborts the batch; skipped ids are reported
- A missing lookup key aborts before any row is touched
"""

import pytest
from sqlalchemy import select
from sqlalchemy.orm import undefer

from models.database import SsnScheme, User
from sensitive.encryption import decrypt_sensitive_data, encrypt_sensitive_data
from sensitive.errors import MissingKeyError
from sensitive.lookup import ssn_lookup_hash
from services.ssn_migration import (
    MigrationReport,
    classify_stored_ssn,
    encrypt_plaintext_ssns,
    legacy_only_user_ids,
    migrate_to_lookup,
)


async def _all_users(db) -> dict[str, User]:
    db.expire_all()
    result = await db.execute(select(User).options(undefer(User.ssn)).order_by(User.id))
    return {u.email: u for u in result.scalars().all()}


# ─── Classification ──────────────────────────────────────────────────────────


class TestClassify:
    def test_marker_wins(self, make_user, encryption_keys):
        user = make_user(ssn="123456789", ssn_scheme=SsnScheme.ENCRYPTED)
        assert classify_stored_ssn(user, encryption_keys) is SsnScheme.ENCRYPTED

    def test_encrypted_by_content(self, make_user, encryption_keys):
        user = make_user(ssn=encrypt_sensitive_data("123456789", encryption_keys))
        assert classify_stored_ssn(user, encryption_keys) is SsnScheme.ENCRYPTED

    def test_plaintext_by_content(self, make_user, encryption_keys):
        user = make_user(ssn="123456789")
        assert classify_stored_ssn(user, encryption_keys) is SsnScheme.PLAINTEXT

    def test_lookup_by_content(self, make_user, encryption_keys):
        user = make_user(ssn=None, ssn_hash="ab" * 32, ssn_last4="6789")
        assert classify_stored_ssn(user, encryption_keys) is SsnScheme.LOOKUP

    def test_digest_wins_over_decryptable_value(self, make_user, encryption_keys):
        user = make_user(ssn=encrypt_sensitive_data("123456789", encryption_keys), ssn_hash="ab" * 32)
        assert classify_stored_ssn(user, encryption_keys) is SsnScheme.LOOKUP

    def test_blob_under_other_key_is_unknown(self, make_user, encryption_keys, other_encryption_keys):
        user = make_user(ssn=encrypt_sensitive_data("123456789", other_encryption_keys))
        assert classify_stored_ssn(user, encryption_keys) is None

    @pytest.mark.parametrize("value", ["123-45-6789", "garbage", "12345"])
    def test_unrecognized_values(self, make_user, encryption_keys, value):
        assert classify_stored_ssn(make_user(ssn=value), encryption_keys) is None

    def test_nothing_stored(self, make_user, encryption_keys):
        assert classify_stored_ssn(make_user(), encryption_keys) is None


class TestMigrationReport:
    def test_ok_and_summary(self):
        report = MigrationReport(migrated=[1, 2], unchanged=[3])
        assert report.ok
        report.skip(4, "AuthenticationError")
        assert not report.ok
        assert report.summary() == "migrated=2 unchanged=1 skipped=1"
        assert report.skipped == {4: "AuthenticationError"}


# ─── Plaintext → Encrypted ───────────────────────────────────────────────────


class TestEncryptPlaintext:
    async def test_encrypts_plaintext_and_skips_bad_rows(
        self, db, make_user, encryption_keys, other_encryption_keys
    ):
        existing_blob = encrypt_sensitive_data("222334444", encryption_keys)
        db.add_all([
            make_user(email="plain@example.com", ssn="123456789"),
            make_user(email="blob@example.com", ssn=existing_blob),
            make_user(email="foreign@example.com", ssn=encrypt_sensitive_data("1", other_encryption_keys)),
            make_user(email="junk@example.com", ssn="not-an-ssn"),
            make_user(email="empty@example.com"),
        ])
        await db.commit()

        report = await encrypt_plaintext_ssns(db, encryption_keys, batch_size=2)
        users = await _all_users(db)

        plain = users["plain@example.com"]
        assert plain.ssn != "123456789"
        assert decrypt_sensitive_data(plain.ssn, encryption_keys) == "123456789"
        assert plain.ssn_scheme is SsnScheme.ENCRYPTED

        blob = users["blob@example.com"]
        assert blob.ssn == existing_blob
        assert blob.ssn_scheme is SsnScheme.ENCRYPTED

        assert report.migrated == [plain.id]
        assert report.unchanged == [blob.id]
        assert set(report.skipped) == {users["foreign@example.com"].id, users["junk@example.com"].id}
        assert users["junk@example.com"].ssn == "not-an-ssn"

    async def test_unmarked_row_with_digest_is_marked_lookup(
        self, db, make_user, encryption_keys, lookup_keys
    ):
        blob = encrypt_sensitive_data("123456789", encryption_keys)
        db.add(make_user(ssn=blob, ssn_hash=ssn_lookup_hash("123456789", lookup_keys), ssn_last4="6789"))
        await db.commit()

        report = await encrypt_plaintext_ssns(db, encryption_keys)
        (user,) = (await _all_users(db)).values()
        assert user.ssn_scheme is SsnScheme.LOOKUP
        assert user.ssn == blob
        assert report.unchanged == [user.id]

        follow_up = await migrate_to_lookup(db, encryption_keys, lookup_keys)
        assert follow_up.migrated == [] and follow_up.ok
        (user,) = (await _all_users(db)).values()
        assert user.ssn_scheme is SsnScheme.LOOKUP

    async def test_raw_leftover_next_to_digest_is_sealed(self, db, make_user, encryption_keys, lookup_keys):
        db.add(make_user(ssn="123456789", ssn_hash=ssn_lookup_hash("123456789", lookup_keys), ssn_last4="6789"))
        await db.commit()

        report = await encrypt_plaintext_ssns(db, encryption_keys)
        (user,) = (await _all_users(db)).values()
        assert report.migrated == [user.id]
        assert user.ssn_scheme is SsnScheme.LOOKUP
        assert decrypt_sensitive_data(user.ssn, encryption_keys) == "123456789"

    async def test_second_run_is_a_no_op(self, db, make_user, encryption_keys):
        db.add(make_user(ssn="123456789"))
        await db.commit()

        first = await encrypt_plaintext_ssns(db, encryption_keys)
        second = await encrypt_plaintext_ssns(db, encryption_keys)
        assert len(first.migrated) == 1
        assert second.migrated == [] and second.unchanged == [] and second.ok


# ─── Legacy → Lookup ─────────────────────────────────────────────────────────


class TestMigrateToLookup:
    async def test_migrates_encrypted_and_plaintext_rows(self, db, make_user, encryption_keys, lookup_keys):
        db.add_all([
            make_user(email="enc@example.com", ssn=encrypt_sensitive_data("123456789", encryption_keys)),
            make_user(email="plain@example.com", ssn="123456789"),
            make_user(email="other@example.com", ssn="987654321"),
        ])
        await db.commit()

        report = await migrate_to_lookup(db, encryption_keys, lookup_keys)
        users = await _all_users(db)

        assert report.ok
        assert len(report.migrated) == 3
        digest = ssn_lookup_hash("123456789", lookup_keys)
        assert users["enc@example.com"].ssn_hash == digest
        assert users["plain@example.com"].ssn_hash == digest
        assert users["other@example.com"].ssn_last4 == "4321"
        for user in users.values():
            assert user.ssn_scheme is SsnScheme.LOOKUP
            assert user.ssn is not None

    async def test_purge_legacy_clears_ssn(self, db, make_user, encryption_keys, lookup_keys):
        db.add(make_user(ssn=encrypt_sensitive_data("123456789", encryption_keys)))
        await db.commit()

        await migrate_to_lookup(db, encryption_keys, lookup_keys, purge_legacy=True)
        (user,) = (await _all_users(db)).values()
        assert user.ssn is None
        assert user.ssn_last4 == "6789"

    async def test_bad_rows_are_skipped_not_fatal(
        self, db, make_user, encryption_keys, other_encryption_keys, lookup_keys
    ):
        db.add_all([
            make_user(email="good@example.com", ssn=encrypt_sensitive_data("123456789", encryption_keys)),
            make_user(
                email="wrongkey@example.com",
                ssn=encrypt_sensitive_data("123456789", other_encryption_keys),
                ssn_scheme=SsnScheme.ENCRYPTED,
            ),
            make_user(email="short@example.com", ssn=encrypt_sensitive_data("1234", encryption_keys)),
            make_user(email="junk@example.com", ssn="???"),
            make_user(email="late@example.com", ssn="555667777"),
        ])
        await db.commit()

        report = await migrate_to_lookup(db, encryption_keys, lookup_keys, batch_size=2)
        users = await _all_users(db)

        assert sorted(report.migrated) == sorted(
            [users["good@example.com"].id, users["late@example.com"].id]
        )
        assert report.skipped[users["wrongkey@example.com"].id] == "AuthenticationError"
        assert "9 digits" in report.skipped[users["short@example.com"].id]
        assert users["junk@example.com"].id in report.skipped
        assert users["wrongkey@example.com"].ssn_hash is None

    async def test_rows_with_digest_are_left_alone(self, db, make_user, encryption_keys, lookup_keys):
        db.add(make_user(ssn="123456789", ssn_hash="ff" * 32, ssn_last4="0000"))
        await db.commit()

        report = await migrate_to_lookup(db, encryption_keys, lookup_keys)
        (user,) = (await _all_users(db)).values()
        assert report.migrated == []
        assert user.ssn_hash == "ff" * 32

    async def test_missing_lookup_key_aborts_before_reading(self, db, make_user, encryption_keys):
        db.add(make_user(ssn="123456789"))
        await db.commit()

        with pytest.raises(MissingKeyError):
            await migrate_to_lookup(db, encryption_keys)
        (user,) = (await _all_users(db)).values()
        assert user.ssn_hash is None
        assert user.ssn_scheme is None


class TestLegacyOnlyUsers:
    async def test_lists_rows_without_digest(self, db, make_user, encryption_keys, lookup_keys):
        db.add_all([
            make_user(email="legacy@example.com", ssn=encrypt_sensitive_data("123456789", encryption_keys)),
            make_user(email="both@example.com", ssn="987654321", ssn_hash="ab" * 32),
            make_user(email="empty@example.com", ssn=""),
            make_user(email="none@example.com"),
        ])
        await db.commit()

        users = await _all_users(db)
        assert await legacy_only_user_ids(db) == [users["legacy@example.com"].id]

        await migrate_to_lookup(db, encryption_keys, lookup_keys)
        assert await legacy_only_user_ids(db) == []
