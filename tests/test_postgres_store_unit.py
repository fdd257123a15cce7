from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import OperationalError, errors

from taskgate.storage.errors import ConstraintViolation, StorageUnavailable
from taskgate.storage.models import Account
from taskgate.storage.postgres import PostgresStore
from taskgate.logging import get_logger

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FailingPool:
    def connection(self):
        raise OperationalError("connection refused")


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses=None, raise_on=None):
        self.statements = []
        self._responses = list(responses or [])
        self._raise_on = raise_on

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        if self._raise_on and self._raise_on in query:
            raise errors.UniqueViolation("duplicate key value")
        return FakeResult(self._responses.pop(0) if self._responses else [])

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    return store


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "handle": "alice",
        "password_hash": "$argon2id$hash",
        "password_algo": "argon2id",
        "failed_login_count": 2,
        "lock_until": None,
        "last_login_at": None,
        "token_version": 1,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_account_row_mapping():
    account = PostgresStore._account_from_row(_account_row())
    assert account.id == "acct-1"
    assert account.failed_login_count == 2
    assert account.token_version == 1


def test_record_row_mapping_defaults():
    record = PostgresStore._record_from_row(
        {
            "id": "r1",
            "account_id": "acct-1",
            "token_hash": "h",
            "encrypted_token": "c",
            "expires_at": NOW,
            "created_at": NOW,
            "active": False,
        }
    )
    assert record.device is None
    assert record.active is False


def test_connection_errors_become_storage_unavailable():
    store = _store(FailingPool())
    with pytest.raises(StorageUnavailable) as exc_info:
        store.get_account("acct-1")
    assert exc_info.value.backend == "postgres"


def test_unique_violation_becomes_constraint_violation():
    store = _store(FakePool(FakeConnection(raise_on="INSERT INTO account")))
    with pytest.raises(ConstraintViolation):
        store.create_account(Account.new("alice", "hash"))


def test_update_account_atomic_locks_row():
    conn = FakeConnection(responses=[[_account_row()]])
    store = _store(FakePool(conn))

    def _fail(acc):
        acc.failed_login_count += 1

    updated = store.update_account_atomic("acct-1", _fail)
    assert updated.failed_login_count == 3
    select, update = conn.statements
    assert select[0].endswith("FOR UPDATE")
    assert update[0].startswith("UPDATE account")
    assert update[1][2] == 3


def test_deactivate_only_touches_active_rows():
    conn = FakeConnection()
    store = _store(FakePool(conn))
    assert store.deactivate_refresh_token("h1") is None
    (statement,) = conn.statements
    assert "AND active" in statement[0]

