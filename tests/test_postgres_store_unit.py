import threading
import uuid
from datetime import datetime, timezone

import pytest
from psycopg import errors

from rentease.logging import get_logger
from rentease.storage.errors import ConstraintViolation
from rentease.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")

    def close(self):
        self.closed = True


class _Result:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class RecordingConnection:
    def __init__(self, row=None, raise_on_execute=None):
        self.row = row
        self.raise_on_execute = raise_on_execute
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.executed.append((query, params))
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        return _Result(self.row)


class RecordingPool(DummyPool):
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _bare_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger(__name__)
    store._pool_kwargs = {"min_size": 1, "max_size": 1}
    store._pool_lock = threading.Lock()
    return store


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "a@b.com",
        "password_hash": "hash",
        "role": "TENANT",
        "is_verified": 1,
        "is_disabled": 0,
        "has_seen_onboarding": None,
        "last_login": None,
        "last_password_change": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "first_name": "Ana",
    }
    row.update(overrides)
    return row


def test_row_to_user_normalises_types():
    row = _row()
    user = PostgresStore._row_to_user(row)

    assert user.id == str(row["id"])
    assert user.is_verified is True
    assert user.is_disabled is False
    assert user.has_seen_onboarding is False
    assert user.first_name == "Ana"
    assert user.bio is None


def test_find_by_email_uses_pooled_connection():
    conn = RecordingConnection(row=_row())
    store = _bare_store(RecordingPool(conn))

    user = store.find_by_email("a@b.com")

    assert user.email == "a@b.com"
    assert conn.executed[0][1] == ("a@b.com",)


def test_find_by_id_missing_row():
    store = _bare_store(RecordingPool(RecordingConnection(row=None)))
    assert store.find_by_id(str(uuid.uuid4())) is None


def test_unique_violation_becomes_constraint_violation():
    conn = RecordingConnection(raise_on_execute=errors.UniqueViolation("duplicate key"))
    store = _bare_store(RecordingPool(conn))

    with pytest.raises(ConstraintViolation) as exc:
        store.create("a@b.com", "hash", "TENANT")
    assert exc.value.detail == {"field": "email"}


def test_update_rejects_unknown_fields_before_touching_db():
    store = _bare_store(DummyPool())
    with pytest.raises(ValueError):
        store.update_by_id("u1", email="new@b.com")


def test_update_passes_values_in_column_order():
    conn = RecordingConnection(row=_row(is_verified=True))
    store = _bare_store(RecordingPool(conn))

    user = store.update_by_id("u1", last_login="ts", is_verified=True)

    assert user.is_verified is True
    _query, params = conn.executed[0]
    assert params == [True, "ts", "u1"]


def test_reset_connection_swaps_pool():
    old_pool = DummyPool()
    store = _bare_store(old_pool)
    new_pool = DummyPool()
    store._build_pool = lambda: new_pool

    store.reset_connection()

    assert store.pool is new_pool
    assert old_pool.closed is True


def test_list_users_filters_role_in_query():
    conn = RecordingConnection(row=_row(role="ADMIN"))
    store = _bare_store(RecordingPool(conn))

    users = store.list_users(5, role="ADMIN")

    query, params = conn.executed[0]
    assert "WHERE role = %s" in query
    assert params == ("ADMIN", 5)
    assert [u.role for u in users] == ["ADMIN"]
