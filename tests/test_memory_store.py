"""Tests for the in-memory credential store and its JSON snapshot."""

import base64
import json
import uuid
from dataclasses import replace
from datetime import timedelta

import pytest

from blubbai.storage.errors import ConstraintViolation
from blubbai.storage.memory import MemoryStore
from blubbai.storage.models import Account, PhoneNumber, RefreshToken, SecretMethod, utcnow

from conftest import TEST_JWT_SECRET


def _account(name="alice", email=None, **kwargs):
    return Account(username=name, email=email or f"{name}@example.com", password_hash="h", **kwargs)


def _refresh(uid, token="tok"):
    return RefreshToken.new(uid, token, utcnow(), timedelta(days=14))


class TestAccountCreation:
    def test_create_assigns_identity(self, store):
        account = store.save(_account())
        assert uuid.UUID(account.uid)
        assert len(account.totp_secret) == 32
        base64.b32decode(account.totp_secret)
        assert account.created_at is not None
        assert account.updated_at >= account.created_at

    def test_create_resets_method_and_verification(self, store):
        account = store.save(
            _account(secret_method=SecretMethod.SMS, mail_verified=True, totp_secret="X")
        )
        assert account.secret_method is SecretMethod.NONE
        assert account.mail_verified is False
        assert account.totp_secret != "X"

    def test_uids_and_secrets_are_unique(self, store):
        first = store.save(_account("alice"))
        second = store.save(_account("bob"))
        assert first.uid != second.uid
        assert first.totp_secret != second.totp_secret

    def test_default_role(self, store):
        account = store.save(_account())
        assert store.get_role(account.role_id).name == "user"

    def test_duplicate_username_violates(self, store):
        store.save(_account("alice", "a@example.com"))
        with pytest.raises(ConstraintViolation) as exc:
            store.save(_account("alice", "b@example.com"))
        assert exc.value.field == "username"

    def test_duplicate_email_violates(self, store):
        store.save(_account("alice", "a@example.com"))
        with pytest.raises(ConstraintViolation) as exc:
            store.save(_account("bob", "a@example.com"))
        assert exc.value.field == "email"


class TestAccountUpdate:
    def test_immutable_fields_are_ignored(self, store):
        account = store.save(_account())
        created_at = account.created_at
        account.totp_secret = "CHANGED"
        account.created_at = created_at - timedelta(days=3)
        account.email = "new@example.com"
        updated = store.save(account)
        assert updated.totp_secret != "CHANGED"
        assert updated.created_at == created_at
        assert updated.email == "new@example.com"
        assert updated.updated_at >= updated.created_at

    def test_unknown_uid_is_not_recreated(self, store):
        account = store.save(_account())
        stale = store.find_by_uid(account.uid)
        store.delete(account)
        stale.secret_method = SecretMethod.AUTHENTICATOR
        with pytest.raises(ConstraintViolation) as exc:
            store.save(stale)
        assert exc.value.field == "uid"
        assert store.find_by_username("alice") is None
        assert store.accounts == {}

    def test_lookups_return_copies(self, store):
        account = store.save(_account())
        fetched = store.find_by_username("alice")
        fetched.email = "mutated@example.com"
        assert store.find_by_uid(account.uid).email == "alice@example.com"
        assert store.find_by_email("alice@example.com").uid == account.uid
        assert store.find_by_username("nobody") is None


class TestOwnership:
    def test_phone_is_linked_to_account(self, store):
        phone = store.save_phone(PhoneNumber(country="DE", number="1608735841"))
        account = store.save(_account(phone_id=phone.id))
        assert store.find_phone(phone.id).account_uid == account.uid
        assert store.find_phone(phone.id).full_number == "+491608735841"

    def test_phone_cannot_be_shared(self, store):
        phone = store.save_phone(PhoneNumber(country="DE", number="1608735841"))
        store.save(_account("alice", phone_id=phone.id))
        with pytest.raises(ConstraintViolation):
            store.save(_account("bob", phone_id=phone.id))

    def test_unknown_phone_id_violates(self, store):
        with pytest.raises(ConstraintViolation):
            store.save(_account(phone_id="missing"))

    def test_replacing_phone_drops_old_record(self, store):
        old = store.save_phone(PhoneNumber(country="DE", number="1608735841"))
        account = store.save(_account(phone_id=old.id))
        new = store.save_phone(PhoneNumber(country="AT", number="6641234567"))
        account.phone_id = new.id
        store.save(account)
        assert store.find_phone(old.id) is None
        assert store.find_phone(new.id).account_uid == account.uid

    def test_refresh_records_are_owned(self, store):
        account = store.save(_account())
        record = store.save_refresh(_refresh(account.uid))
        assert store.find_by_uid(account.uid).refresh_ids == [record.id]
        assert store.find_refresh("tok") == record
        assert store.refresh_tokens_for(account.uid) == [record]

    def test_inactive_refresh_records_are_pruned(self, store):
        account = store.save(_account())
        issued = utcnow()
        expired = store.save_refresh(
            RefreshToken.new(account.uid, "old", issued - timedelta(days=15), timedelta(days=14))
        )
        revoked = store.save_refresh(
            replace(RefreshToken.new(account.uid, "gone", issued, timedelta(days=14)), revoked=True)
        )
        live = store.save_refresh(RefreshToken.new(account.uid, "live", issued, timedelta(days=14)))
        latest = store.save_refresh(RefreshToken.new(account.uid, "new", issued, timedelta(days=14)))
        assert store.find_refresh("old") is None
        assert store.find_refresh("gone") is None
        assert set(store.refresh_tokens) == {live.id, latest.id}
        assert store.find_by_uid(account.uid).refresh_ids == [live.id, latest.id]
        assert expired.id not in store.refresh_tokens
        assert revoked.id not in store.refresh_tokens

    def test_pruning_keeps_other_owners(self, store):
        alice = store.save(_account("alice"))
        bob = store.save(_account("bob"))
        stale = store.save_refresh(
            RefreshToken.new(bob.uid, "bob-old", utcnow() - timedelta(days=30), timedelta(days=14))
        )
        store.save_refresh(_refresh(alice.uid))
        assert store.find_refresh("bob-old") == stale

    def test_refresh_for_unknown_account_violates(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_refresh(_refresh(str(uuid.uuid4())))

    def test_delete_cascades(self, store):
        phone = store.save_phone(PhoneNumber(country="DE", number="1608735841"))
        account = store.save(_account(phone_id=phone.id))
        store.save_refresh(_refresh(account.uid))
        assert store.delete(account) is True
        assert store.find_by_uid(account.uid) is None
        assert store.find_phone(phone.id) is None
        assert store.find_refresh("tok") is None
        assert store.delete(account) is False


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=TEST_JWT_SECRET)
        phone = store.save_phone(PhoneNumber(country="DE", number="1608735841"))
        account = store.save(_account(phone_id=phone.id))
        store.save_refresh(_refresh(account.uid))

        reloaded = MemoryStore(fs_root=str(tmp_path), secret_key=TEST_JWT_SECRET)
        restored = reloaded.find_by_uid(account.uid)
        assert restored == store.find_by_uid(account.uid)
        assert restored.totp_secret == account.totp_secret
        assert reloaded.find_phone(phone.id).account_uid == account.uid
        assert reloaded.find_refresh("tok").account_uid == account.uid

    def test_totp_secret_is_encrypted_at_rest(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=TEST_JWT_SECRET)
        account = store.save(_account())
        raw = json.loads((tmp_path / "state" / "credential_store.json").read_text())
        persisted = raw["accounts"][0]["totp_secret"]
        assert persisted != account.totp_secret
        assert account.totp_secret not in json.dumps(raw)

    def test_wrong_key_cannot_read_secrets(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=TEST_JWT_SECRET)
        store.save(_account())
        with pytest.raises(RuntimeError):
            MemoryStore(fs_root=str(tmp_path), secret_key="another-key" * 8)

    def test_persisting_requires_key(self, tmp_path):
        with pytest.raises(ValueError):
            MemoryStore(fs_root=str(tmp_path))
