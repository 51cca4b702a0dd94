from contextlib import contextmanager
from datetime import datetime

import psycopg
import pytest
from psycopg import errors

from taskgate.logging import get_logger
from taskgate.storage.errors import ConstraintViolation, StoreUnavailable
from taskgate.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results, error=None):
        self.conn = FakeConnection(results)
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    store.timeout = 1.0
    return store


def _user_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "email": "ada@example.com",
        "username": "ada",
        "display_name": "Ada",
        "avatar_url": None,
        "status": "active",
        "created_at": datetime(2024, 1, 1),
    }
    row.update(overrides)
    return row


def test_find_login_candidate_with_account():
    row = _user_row(
        account_provider="google",
        account_provider_account_id="g-1",
        account_created_at=datetime(2024, 1, 2),
    )
    pool = FakePool(FakeCursor([row]))
    user, account = _store(pool).find_login_candidate("ada@example.com", "ada", "google")

    assert user.email == "ada@example.com"
    assert account.provider == "google"
    assert account.provider_account_id == "g-1"
    sql, params = pool.conn.statements[0]
    assert "LEFT JOIN auth_account" in sql
    assert params == ("google", "ada@example.com", "ada", "ada@example.com")


def test_find_login_candidate_without_account():
    row = _user_row(account_provider=None, account_provider_account_id=None)
    user, account = _store(FakePool(FakeCursor([row]))).find_login_candidate(
        "ada@example.com", "ada", "github"
    )
    assert user.username == "ada"
    assert account is None


def test_find_login_candidate_none():
    assert _store(FakePool(FakeCursor([]))).find_login_candidate("x@y.z", "x", "code") is None


def test_create_user_with_account_writes_both_rows():
    pool = FakePool(FakeCursor([_user_row()]), FakeCursor())
    user = _store(pool).create_user_with_account(
        email="ada@example.com",
        username="ada",
        display_name="Ada",
        avatar_url=None,
        provider="code",
        provider_account_id=None,
    )
    assert user.email == "ada@example.com"
    assert len(pool.conn.statements) == 2
    user_insert, account_insert = pool.conn.statements
    assert user_insert[0].startswith("INSERT INTO app_user")
    assert account_insert[0].startswith("INSERT INTO auth_account")
    new_id = user_insert[1][0]
    # Without a provider id the account is keyed by the user id
    assert account_insert[1] == (new_id, "code", new_id)


def test_create_user_username_conflict():
    conflict = errors.UniqueViolation('duplicate key value violates unique constraint "app_user_username_key"')
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(FakePool(conflict)).create_user_with_account(
            email="ada@example.com",
            username="ada",
            display_name=None,
            avatar_url=None,
            provider="code",
            provider_account_id=None,
        )
    assert excinfo.value.detail == {"field": "username"}


def test_create_account_missing_user():
    missing = errors.ForeignKeyViolation("insert violates foreign key constraint")
    with pytest.raises(ConstraintViolation):
        _store(FakePool(missing)).create_account("nope", "google", "g-1")


def test_create_account_ignores_existing_link():
    pool = FakePool(FakeCursor())
    _store(pool).create_account("u", "google", "g-1")
    assert "ON CONFLICT (user_id, provider) DO NOTHING" in pool.conn.statements[0][0]


def test_set_user_status_validates_value():
    with pytest.raises(ValueError):
        _store(FakePool()).set_user_status("u", "banned")


def test_delete_user_reports_rowcount():
    assert _store(FakePool(FakeCursor(rowcount=1))).delete_user("u") is True
    assert _store(FakePool(FakeCursor(rowcount=0))).delete_user("u") is False


def test_operational_error_becomes_store_unavailable():
    store = _store(FakePool(error=psycopg.OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_user("u")
    assert excinfo.value.backend == "postgres"
    assert excinfo.value.status_code == 503


def test_ping():
    assert _store(FakePool(FakeCursor([{"ok": 1}]))).ping() is True
