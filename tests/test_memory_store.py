from datetime import timedelta
from pathlib import Path

import pytest

from appauth.storage.errors import ConstraintViolation, StoreUnavailable
from appauth.storage.memory import MemoryStore
from appauth.storage.models import AppRegistration, RefreshToken, User, utcnow


def _user(email="persist@example.com", app="todo-app", roles=("user",)):
    user = User.new(email)
    user.app_registrations.append(
        AppRegistration(app_identifier=app, roles=list(roles), password="$argon2id$fake")
    )
    return user


def test_memory_store_persists_registrations(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(roles=("user", "admin"))
    user.provider_ids["google"] = "g-1"
    registration = user.app_registrations[0]
    registration.login_attempts = 3
    registration.locked_until = utcnow() + timedelta(minutes=5)
    store.create_user(user)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.email == "persist@example.com"
    assert reloaded_user.provider_ids == {"google": "g-1"}
    reg = reloaded_user.registration_for("todo-app")
    assert reg.roles == ["user", "admin"]
    assert reg.login_attempts == 3
    assert reg.locked_until == registration.locked_until
    assert reg.locked_until.tzinfo is not None


def test_reads_are_detached_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(_user())
    fetched = store.get_user(user.id)
    fetched.app_registrations[0].roles.append("admin")
    assert store.get_user(user.id).registration_for("todo-app").roles == ["user"]


def test_email_unique_case_insensitive(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user(_user("dup@example.com"))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(_user("DUP@example.com"))
    assert exc_info.value.detail == {"field": "email"}
    assert store.get_user_by_email(" Dup@Example.com ") is not None


def test_provider_identity_unique(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = _user("one@example.com")
    first.provider_ids["github"] = "42"
    store.create_user(first)
    second = _user("two@example.com")
    second.provider_ids["github"] = "42"
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(second)
    assert exc_info.value.detail["field"] == "provider_ids"
    assert store.get_user_by_provider("github", "42").id == first.id


def test_list_users_filters_by_app(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user(_user("a@example.com", app="todo-app"))
    store.create_user(_user("b@example.com", app="sera-food-customer-app"))
    store.create_user(_user("c@example.com", app="todo-app"))

    todo = store.list_users("todo-app")
    assert [u.email for u in todo] == ["a@example.com", "c@example.com"]
    assert len(store.list_users()) == 3
    assert [u.email for u in store.list_users(limit=1, offset=1)] == ["b@example.com"]


def test_token_hash_lookup(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user()
    user.password_reset_token_hash = "abc123"
    store.create_user(user)
    assert store.get_user_by_token_hash("password_reset", "abc123").id == user.id
    assert store.get_user_by_token_hash("email_verification", "abc123") is None


def test_delete_user_drops_refresh_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(_user())
    store.save_refresh_token(RefreshToken.new("hash-1", user.id, 60))
    store.save_refresh_token(RefreshToken.new("hash-2", "someone-else", 60))

    assert store.delete_user(user.id) is True
    assert store.get_user(user.id) is None
    assert store.get_refresh_token("hash-1") is None
    assert store.get_refresh_token("hash-2") is not None
    assert store.delete_user(user.id) is False


def test_refresh_token_revocation(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.save_refresh_token(RefreshToken.new("hash-1", "user-1", 60))
    store.save_refresh_token(RefreshToken.new("hash-2", "user-1", 60))

    assert store.revoke_refresh_token("hash-1") is True
    assert store.revoke_refresh_token("hash-1") is False
    assert store.revoke_user_refresh_tokens("user-1") == 1

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_refresh_token("hash-2").is_revoked


def test_failed_write_leaves_state_unchanged(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    existing = store.create_user(_user())
    store.save_refresh_token(RefreshToken.new("hash-1", existing.id, 60))

    def _disk_full(self, *args, **kwargs):
        raise OSError("no space left on device")

    monkeypatch.setattr(Path, "write_text", _disk_full)

    newcomer = _user(email="new@example.com")
    with pytest.raises(StoreUnavailable):
        store.create_user(newcomer)
    assert store.get_user(newcomer.id) is None
    assert store.get_user_by_email("new@example.com") is None

    existing.username = "renamed"
    with pytest.raises(StoreUnavailable):
        store.save_user(existing)
    assert store.get_user(existing.id).username == "persist"

    with pytest.raises(StoreUnavailable):
        store.revoke_refresh_token("hash-1")
    assert not store.get_refresh_token("hash-1").is_revoked

    with pytest.raises(StoreUnavailable):
        store.delete_user(existing.id)
    assert store.get_user(existing.id) is not None
