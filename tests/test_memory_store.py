"""Tests for the in-memory credential store."""

from datetime import datetime, timedelta, timezone

import pytest

from tokenwarden.storage.common import CredentialStore
from tokenwarden.storage.errors import ConstraintViolation, RecordNotFound, StoreError
from tokenwarden.storage.memory import MemoryStore


def _future(hours=1):
    return datetime.now(timezone.utc) + timedelta(hours=hours)


class TestUsers:
    def test_satisfies_protocol(self, store):
        assert isinstance(store, CredentialStore)

    def test_create_and_lookup(self, store):
        user = store.create_user("A", "A@X.com", "hash")

        assert user.email == "a@x.com"
        assert store.get_user(user.id).name == "A"
        assert store.get_user_by_email(" a@x.COM ").id == user.id
        assert store.get_user("missing") is None
        assert store.get_user_by_email("missing@x.com") is None

    def test_duplicate_email(self, store):
        store.create_user("A", "a@x.com", "hash")

        with pytest.raises(ConstraintViolation):
            store.create_user("B", "a@x.com", "hash")

    def test_returned_users_are_copies(self, store):
        user = store.create_user("A", "a@x.com", "hash")
        user.password_hash = "tampered"

        assert store.get_user(user.id).password_hash == "hash"


class TestResetTokens:
    def test_save_and_find(self, store):
        user = store.create_user("A", "a@x.com", "hash")
        store.save_reset_token("a@x.com", "tok", _future())

        assert store.get_user_by_reset_token("tok").id == user.id
        assert store.get_user_by_reset_token("other") is None
        assert store.get_user_by_reset_token("") is None

    def test_expired_token_is_not_found(self, store):
        store.create_user("A", "a@x.com", "hash")
        store.save_reset_token("a@x.com", "tok", _future(hours=-1))

        assert store.get_user_by_reset_token("tok") is None

    def test_unknown_email(self, store):
        with pytest.raises(RecordNotFound):
            store.save_reset_token("ghost@x.com", "tok", _future())

    def test_update_password_clears_reset_fields(self, store):
        user = store.create_user("A", "a@x.com", "hash")
        store.save_reset_token("a@x.com", "tok", _future())

        store.update_password(user.id, "new-hash")

        stored = store.get_user(user.id)
        assert stored.password_hash == "new-hash"
        assert stored.reset_token is None
        assert stored.reset_token_expiry is None
        assert store.get_user_by_reset_token("tok") is None

    def test_update_password_unknown_user(self, store):
        with pytest.raises(RecordNotFound):
            store.update_password("missing", "hash")


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        user = first.create_user("A", "a@x.com", "hash")
        expiry = _future()
        first.save_reset_token("a@x.com", "tok", expiry)

        second = MemoryStore(fs_root=str(tmp_path))

        reloaded = second.get_user(user.id)
        assert reloaded.email == "a@x.com"
        assert reloaded.password_hash == "hash"
        assert reloaded.reset_token == "tok"
        assert reloaded.reset_token_expiry == expiry
        assert (tmp_path / "state" / "credential_store.json").exists()

    def test_failed_write_leaves_memory_and_snapshot_unchanged(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("A", "a@x.com", "hash")
        snapshot = tmp_path / "state" / "credential_store.json"
        before = snapshot.read_text()

        def disk_full(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("tokenwarden.storage.memory.os.replace", disk_full)

        with pytest.raises(StoreError):
            store.update_password(user.id, "new-hash")
        with pytest.raises(StoreError):
            store.create_user("B", "b@x.com", "hash")

        assert store.get_user(user.id).password_hash == "hash"
        assert store.get_user_by_email("b@x.com") is None
        assert snapshot.read_text() == before
        assert list(snapshot.parent.glob("*.tmp")) == []

    def test_no_fs_root_writes_nothing(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        MemoryStore().create_user("A", "a@x.com", "hash")

        assert list(tmp_path.iterdir()) == []
