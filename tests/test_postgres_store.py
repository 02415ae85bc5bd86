import json
from pathlib import Path
from types import SimpleNamespace

import psycopg
import pytest
from psycopg import errors

from appauth.logging import get_logger
from appauth.storage.common import user_to_document
from appauth.storage.errors import ConstraintViolation, StoreUnavailable
from appauth.storage.models import AppRegistration, User
from appauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        self.pool.queries.append((" ".join(query.split()), params))
        if self.pool.fail_with is not None:
            raise self.pool.fail_with
        return self.pool.responses.pop(0) if self.pool.responses else FakeCursor()


class FakePool:
    def __init__(self):
        self.queries = []
        self.responses = []
        self.fail_with = None

    def connection(self):
        return FakeConnection(self)


class _ProviderUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="user_provider_ids_provider_pkey")


class _EmailUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_users_email_key")


@pytest.fixture
def store(tmp_path: Path):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool()
    store.fs_root = tmp_path
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    return store


def _user():
    user = User.new("Pg@Example.com")
    user.provider_ids["google"] = "g-1"
    user.app_registrations.append(AppRegistration(app_identifier="todo-app", roles=["user"]))
    return user


def test_create_user_writes_document_and_provider_rows(store):
    created = store.create_user(_user())
    insert_query, insert_params = store.pool.queries[0]
    assert insert_query.startswith("INSERT INTO app_users")
    assert insert_params[1] == "pg@example.com"
    doc = json.loads(insert_params[2])
    assert doc["app_registrations"][0]["app_identifier"] == "todo-app"
    provider_rows = [q for q in store.pool.queries if q[0].startswith("INSERT INTO user_provider_ids")]
    assert provider_rows[0][1] == ("google", "g-1", created.id)


def test_get_user_decodes_document(store):
    user = _user()
    store.pool.responses.append(FakeCursor(rows=[{"doc": json.dumps(user_to_document(user))}]))
    fetched = store.get_user(user.id)
    assert fetched.id == user.id
    assert fetched.registration_for("todo-app").roles == ["user"]


def test_get_user_missing(store):
    store.pool.responses.append(FakeCursor(rows=[]))
    assert store.get_user("nope") is None


def test_list_users_by_app_uses_containment(store):
    store.list_users("todo-app", limit=10, offset=5)
    query, params = store.pool.queries[0]
    assert "@>" in query
    assert json.loads(params[0]) == [{"app_identifier": "todo-app"}]
    assert params[1:] == (10, 5)


def test_revoke_refresh_token_reports_rowcount(store):
    store.pool.responses.append(FakeCursor(rowcount=1))
    assert store.revoke_refresh_token("hash") is True
    store.pool.responses.append(FakeCursor(rowcount=0))
    assert store.revoke_refresh_token("hash") is False


def test_unique_violation_maps_to_field(store):
    store.pool.fail_with = _ProviderUniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.save_user(_user())
    assert exc_info.value.detail == {"field": "provider_ids"}

    store.pool.fail_with = _EmailUniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(_user())
    assert exc_info.value.detail == {"field": "email"}


def test_operational_error_is_store_unavailable(store):
    store.pool.fail_with = psycopg.OperationalError("connection refused")
    with pytest.raises(StoreUnavailable):
        store.get_user("any")
