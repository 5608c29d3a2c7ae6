#!/usr/bin/env python3
"""Unit tests for registration, login and session projection."""

import hashlib
import importlib
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

credentials = importlib.import_module("roost.credentials")
CredentialManager = credentials.CredentialManager
UserRecord = credentials.UserRecord
SchemaReconciler = importlib.import_module("roost.schema").SchemaReconciler
SQLiteStorage = importlib.import_module("roost.storage").SQLiteStorage
MemorySessionStore = importlib.import_module("roost.session").MemorySessionStore
EventLog = importlib.import_module("roost.events").EventLog
BcryptHasher = importlib.import_module("roost.hashing").BcryptHasher
RoostConfig = importlib.import_module("roost.config").RoostConfig

_errors = importlib.import_module("roost.errors")
AuthError = _errors.AuthError
DuplicateError = _errors.DuplicateError
IntegrityError = _errors.IntegrityError
UpdateError = _errors.UpdateError
ValidationError = _errors.ValidationError


class VersionedHasher:
    """Deterministic hasher whose "current parameters" are a version number."""

    def __init__(self, version=1):
        self.version = version
        self.hash_calls = 0

    def _digest(self, password):
        return hashlib.sha256(password.encode("utf-8")).hexdigest()

    def hash(self, password):
        self.hash_calls += 1
        return f"v{self.version}${self._digest(password)}"

    def verify(self, password, digest):
        _, _, hexed = digest.partition("$")
        return hexed == self._digest(password)

    def needs_rehash(self, digest):
        return not digest.startswith(f"v{self.version}$")


@pytest.fixture
def storage(tmp_path):
    store = SQLiteStorage(str(tmp_path / "users.db"))
    SchemaReconciler(store).ensure_user_table()
    yield store
    store.close()


@pytest.fixture
def sessions():
    return MemorySessionStore()


@pytest.fixture
def hasher():
    return VersionedHasher()


@pytest.fixture
def manager(storage, sessions, hasher):
    return CredentialManager(storage, sessions, hasher=hasher)


def _register(manager, username="alice", email="a@x.com", password="secret1"):
    return manager.register_user({"username": username, "email": email}, password)


class TestRegister:
    def test_returns_inserted_count(self, manager):
        assert _register(manager) == 1

    def test_stores_digest_not_plaintext(self, manager, storage):
        _register(manager)
        row = storage.select("roost_users", {"username": "alice"})[0]
        assert row["hashword"]
        assert row["hashword"] != "secret1"

    def test_password_from_user_data(self, manager, storage):
        manager.register_user({"username": "alice", "email": "a@x.com", "password": "secret1"})
        assert manager.login_user("alice", "secret1").username == "alice"

    def test_password_key_never_stored(self, storage, sessions, hasher):
        storage.execute('ALTER TABLE "roost_users" ADD COLUMN "password" TEXT')
        manager = CredentialManager(storage, sessions, hasher=hasher)
        manager.register_user(
            {"username": "alice", "email": "a@x.com", "password": "from-data"}, "secret1"
        )
        row = storage.select("roost_users", {"username": "alice"})[0]
        assert row["password"] is None
        assert manager.login_user("alice", "secret1")

    def test_drops_unknown_keys(self, manager, storage):
        manager.register_user(
            {"username": "alice", "email": "a@x.com", "is_admin": True}, "secret1"
        )
        row = storage.select("roost_users", {"username": "alice"})[0]
        assert "is_admin" not in row

    def test_keeps_extra_existing_columns(self, storage, sessions, hasher):
        storage.execute('ALTER TABLE "roost_users" ADD COLUMN "nickname" TEXT')
        manager = CredentialManager(storage, sessions, hasher=hasher)
        manager.register_user(
            {"username": "alice", "email": "a@x.com", "nickname": "Al"}, "secret1"
        )
        assert manager.get_user("alice").extra == {"nickname": "Al"}

    def test_caller_cannot_choose_hash(self, manager, storage):
        manager.register_user(
            {"username": "alice", "email": "a@x.com", "hashword": "v1$forged"}, "secret1"
        )
        row = storage.select("roost_users", {"username": "alice"})[0]
        assert row["hashword"] != "v1$forged"

    def test_created_equals_last_login(self, manager):
        _register(manager)
        user = manager.get_user("alice")
        assert user.created is not None
        assert user.created == user.last_login


class TestValidation:
    def test_username_at_limit(self, manager):
        assert _register(manager, username="u" * 64) == 1

    def test_username_over_limit(self, manager, hasher):
        with pytest.raises(ValidationError, match="Username too long"):
            _register(manager, username="u" * 65)
        assert hasher.hash_calls == 0

    def test_configured_name_length(self, storage, sessions, hasher):
        manager = CredentialManager(
            storage, sessions, hasher=hasher, config=RoostConfig(name_length=8)
        )
        assert _register(manager, username="u" * 8) == 1
        with pytest.raises(ValidationError):
            _register(manager, username="v" * 9, email="b@x.com")

    def test_email_at_limit(self, manager):
        email = "e" * (320 - len("@x.com")) + "@x.com"
        assert len(email) == 320
        assert _register(manager, email=email) == 1

    def test_email_over_limit(self, manager):
        email = "e" * (321 - len("@x.com")) + "@x.com"
        with pytest.raises(ValidationError, match="Email too long"):
            _register(manager, email=email)

    def test_whitespace_password(self, manager):
        with pytest.raises(ValidationError, match="Empty password"):
            _register(manager, password="   ")

    def test_missing_password(self, manager):
        with pytest.raises(ValidationError, match="Empty password"):
            manager.register_user({"username": "alice", "email": "a@x.com"})

    def test_single_character_password(self, manager):
        assert _register(manager, password="a") == 1

    def test_missing_username(self, manager):
        with pytest.raises(ValidationError, match="Username is required"):
            manager.register_user({"email": "a@x.com"}, "secret1")

    def test_missing_email(self, manager):
        with pytest.raises(ValidationError, match="Email is required"):
            manager.register_user({"username": "alice"}, "secret1")

    def test_nothing_inserted_on_failure(self, manager, storage):
        with pytest.raises(ValidationError):
            _register(manager, password="")
        assert storage.select("roost_users", {}) == []


class TestUniqueness:
    def test_same_username(self, manager, storage):
        _register(manager)
        with pytest.raises(DuplicateError):
            _register(manager, email="other@x.com")
        assert len(storage.select("roost_users", {"username": "alice"})) == 1

    def test_same_email(self, manager, storage):
        _register(manager)
        with pytest.raises(DuplicateError):
            _register(manager, username="bob")
        assert len(storage.select("roost_users", {"email": "a@x.com"})) == 1


class TestBcryptPasswordLength:
    @pytest.fixture
    def bcrypt_manager(self, storage, sessions):
        return CredentialManager(storage, sessions, hasher=BcryptHasher(rounds=4))

    def test_register_long_password(self, bcrypt_manager, storage):
        with pytest.raises(ValidationError, match="Password too long"):
            _register(bcrypt_manager, password="p" * 100)
        assert storage.select("roost_users", {}) == []

    def test_register_at_byte_limit(self, bcrypt_manager):
        assert _register(bcrypt_manager, password="p" * 72) == 1
        assert bcrypt_manager.login_user("alice", "p" * 72).username == "alice"

    def test_multibyte_password_over_limit(self, bcrypt_manager):
        # 37 characters, 74 bytes
        with pytest.raises(ValidationError, match="Password too long"):
            _register(bcrypt_manager, password="é" * 37)

    def test_change_to_long_password(self, bcrypt_manager, storage):
        _register(bcrypt_manager)
        before = storage.select("roost_users", {"username": "alice"})[0]["hashword"]
        with pytest.raises(ValidationError, match="Password too long"):
            bcrypt_manager.change_password("alice", "p" * 100)
        assert storage.select("roost_users", {"username": "alice"})[0]["hashword"] == before

    def test_login_with_long_password(self, bcrypt_manager):
        _register(bcrypt_manager)
        with pytest.raises(AuthError):
            bcrypt_manager.login_user("alice", "p" * 100)


class TestGetUser:
    def test_unknown_user(self, manager):
        assert manager.get_user("nobody") is None

    def test_returns_record(self, manager):
        _register(manager)
        user = manager.get_user("alice")
        assert isinstance(user, UserRecord)
        assert user.email == "a@x.com"
        assert user.created.tzinfo is not None

    def test_duplicate_rows_raise(self, tmp_path, sessions, hasher):
        storage = SQLiteStorage(str(tmp_path / "legacy.db"))
        storage.execute(
            'CREATE TABLE "roost_users" ("username" TEXT, "email" TEXT, "hashword" TEXT, '
            '"last_login" TIMESTAMP, "created" TIMESTAMP)'
        )
        storage.insert("roost_users", {"username": "alice", "email": "a@x.com", "hashword": "h"})
        storage.insert("roost_users", {"username": "alice", "email": "b@x.com", "hashword": "h"})
        manager = CredentialManager(storage, sessions, hasher=hasher)

        with pytest.raises(IntegrityError, match="More than one user"):
            manager.get_user("alice")
        storage.close()


class TestLogin:
    def test_round_trip(self, manager):
        _register(manager)
        user = manager.login_user("alice", "secret1")
        assert user.username == "alice"
        assert user.password_hash != "secret1"

    def test_wrong_credentials_indistinguishable(self, manager):
        _register(manager)
        with pytest.raises(AuthError) as wrong_password:
            manager.login_user("alice", "wrong")
        with pytest.raises(AuthError) as unknown_user:
            manager.login_user("nobody", "wrong")
        assert str(wrong_password.value) == str(unknown_user.value)

    def test_unknown_user_still_verifies(self, manager, hasher, monkeypatch):
        calls = []
        original = hasher.verify
        monkeypatch.setattr(
            hasher, "verify", lambda pw, digest: calls.append(digest) or original(pw, digest)
        )
        with pytest.raises(AuthError):
            manager.login_user("nobody", "wrong")
        assert len(calls) == 1

    def test_updates_last_login(self, manager, monkeypatch):
        _register(manager)
        monkeypatch.setattr(credentials, "_now", lambda: "2030-01-02 03:04:05")
        user = manager.login_user("alice", "secret1")
        assert user.last_login == datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert manager.get_user("alice").last_login == user.last_login
        assert user.created != user.last_login

    def test_loads_session_by_default(self, manager, sessions):
        _register(manager)
        manager.login_user("alice", "secret1")
        projected = sessions.get("user_data")
        assert projected["username"] == "alice"
        assert projected["email"] == "a@x.com"
        assert set(projected) == {"username", "email", "hashword", "last_login", "created"}

    def test_skip_session(self, manager, sessions):
        _register(manager)
        manager.login_user("alice", "secret1", load_to_session=False)
        assert sessions.get("user_data") == {}

    def test_failed_login_leaves_session_alone(self, manager, sessions):
        _register(manager)
        with pytest.raises(AuthError):
            manager.login_user("alice", "wrong")
        assert sessions.get("user_data") == {}

    def test_custom_session_key(self, storage, sessions, hasher):
        manager = CredentialManager(
            storage, sessions, hasher=hasher, config=RoostConfig(session_key="me")
        )
        _register(manager)
        manager.login_user("alice", "secret1")
        assert sessions.get("me")["username"] == "alice"


class TestRehash:
    def test_outdated_digest_replaced(self, storage, sessions):
        old_hasher = VersionedHasher(version=1)
        _register(CredentialManager(storage, sessions, hasher=old_hasher))
        old_digest = storage.select("roost_users", {"username": "alice"})[0]["hashword"]

        new_hasher = VersionedHasher(version=2)
        manager = CredentialManager(storage, sessions, hasher=new_hasher)
        user = manager.login_user("alice", "secret1")

        stored = storage.select("roost_users", {"username": "alice"})[0]["hashword"]
        assert stored != old_digest
        assert stored == user.password_hash
        assert new_hasher.needs_rehash(old_digest)
        assert not new_hasher.needs_rehash(stored)
        assert manager.login_user("alice", "secret1").username == "alice"

    def test_current_digest_untouched(self, manager, storage, hasher):
        _register(manager)
        before = storage.select("roost_users", {"username": "alice"})[0]["hashword"]
        calls = hasher.hash_calls
        manager.login_user("alice", "secret1")
        after = storage.select("roost_users", {"username": "alice"})[0]["hashword"]
        assert after == before
        assert hasher.hash_calls == calls

    def test_bcrypt_cost_upgrade(self, storage, sessions):
        _register(CredentialManager(storage, sessions, hasher=BcryptHasher(rounds=4)))
        assert _stored_digest(storage).startswith("$2b$04$")

        manager = CredentialManager(storage, sessions, hasher=BcryptHasher(rounds=5))
        manager.login_user("alice", "secret1")
        assert _stored_digest(storage).startswith("$2b$05$")
        assert manager.login_user("alice", "secret1").username == "alice"


def _stored_digest(storage):
    return storage.select("roost_users", {"username": "alice"})[0]["hashword"]


class TestUpdates:
    def test_update_user_passthrough(self, manager, storage):
        storage.execute('ALTER TABLE "roost_users" ADD COLUMN "nickname" TEXT')
        _register(manager)
        assert manager.update_user("alice", {"nickname": "Al"}) == 1
        assert manager.update_user("nobody", {"nickname": "No"}) == 0
        assert storage.select("roost_users", {"username": "alice"})[0]["nickname"] == "Al"

    def test_change_password(self, manager):
        _register(manager)
        assert manager.change_password("alice", "new-secret") is True
        with pytest.raises(AuthError):
            manager.login_user("alice", "secret1")
        assert manager.login_user("alice", "new-secret").username == "alice"

    def test_change_password_unknown_user(self, manager):
        with pytest.raises(UpdateError):
            manager.change_password("nobody", "new-secret")

    def test_change_password_blank(self, manager):
        _register(manager)
        with pytest.raises(ValidationError):
            manager.change_password("alice", "  ")


class TestSession:
    def test_load_user_session_copies_every_field(self, manager, sessions):
        _register(manager)
        user = manager.get_user("alice")
        manager.load_user_session(user)
        assert sessions.get("user_data") == manager.user_to_row(user)

    def test_logout_clears_namespace(self, manager, sessions):
        _register(manager)
        sessions.set("cart", "items", 3)
        manager.load_user_session(manager.get_user("alice"))
        manager.logout_user()
        assert sessions.get("user_data") == {}
        assert sessions.get("cart") == {"items": 3}

    def test_logout_without_session(self, manager, sessions):
        manager.logout_user()
        assert sessions.get("user_data") == {}

    def test_logout_with_set_and_clear_only_store(self, storage, hasher):
        class MinimalSessions:
            def __init__(self):
                self.data = {}

            def set(self, namespace, key, value):
                self.data.setdefault(namespace, {})[key] = value

            def clear(self, namespace):
                self.data.pop(namespace, None)

        sessions = MinimalSessions()
        manager = CredentialManager(storage, sessions, hasher=hasher)
        _register(manager)
        manager.login_user("alice", "secret1")
        assert sessions.data["user_data"]["username"] == "alice"
        manager.logout_user()
        assert "user_data" not in sessions.data


class TestListing:
    def test_list_users(self, manager):
        assert manager.list_users() == []
        _register(manager)
        _register(manager, username="bob", email="b@x.com")
        assert sorted(u.username for u in manager.list_users()) == ["alice", "bob"]

    def test_list_users_ordered_by_creation(self, manager, monkeypatch):
        monkeypatch.setattr(credentials, "_now", lambda: "2030-01-02 00:00:00")
        _register(manager, username="zed", email="z@x.com")
        monkeypatch.setattr(credentials, "_now", lambda: "2030-01-01 00:00:00")
        _register(manager, username="amy", email="am@x.com")
        monkeypatch.setattr(credentials, "_now", lambda: "2030-01-03 00:00:00")
        _register(manager, username="bob", email="b@x.com")
        assert [u.username for u in manager.list_users()] == ["amy", "zed", "bob"]

    def test_verify_email_is_stub(self, manager):
        assert manager.verify_email() is False


class TestEvents:
    def test_events_recorded_without_passwords(self, storage, sessions, hasher, tmp_path):
        events = EventLog(tmp_path / "events.jsonl")
        manager = CredentialManager(storage, sessions, hasher=hasher, events=events)
        _register(manager)
        manager.login_user("alice", "secret1")
        with pytest.raises(AuthError):
            manager.login_user("alice", "wrong")
        manager.logout_user()

        types = [e["event_type"] for e in events.read()]
        assert types == ["user_registered", "login_success", "login_failure", "logout"]
        raw = (tmp_path / "events.jsonl").read_text()
        assert "secret1" not in raw
        assert "wrong" not in raw

    def test_event_log_from_config(self, storage, sessions, hasher, tmp_path):
        path = tmp_path / "from-config.jsonl"
        manager = CredentialManager(
            storage, sessions, hasher=hasher, config=RoostConfig(event_log=str(path))
        )
        _register(manager)
        assert manager.events.read("user_registered")[0]["username"] == "alice"
