import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from identcore.storage.errors import ConstraintViolation, StoreUnavailable
from identcore.storage.models import AccountStatus, Role
from identcore.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _row(**overrides):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "p@example.com",
        "password_hash": "h",
        "role": "user",
        "status": "active",
        "token_version": 0,
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
    }
    row.update(overrides)
    return row


def _store(row=None, error=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.logger = MagicMock()
    store.timeout_seconds = 5.0
    store.pool = MagicMock()
    conn = store.pool.connection.return_value.__enter__.return_value
    if error is not None:
        conn.execute.side_effect = error
    else:
        conn.execute.return_value.fetchone.return_value = row
    return store, conn


def test_create_account_normalizes_email():
    store, conn = _store(_row(status="pending_verification"))

    account = store.create_account(" P@Example.com ", "h")

    params = conn.execute.call_args.args[1]
    assert params[1] == "p@example.com"
    assert params[3:] == ("user", "pending_verification")
    assert account.status == AccountStatus.PENDING_VERIFICATION


def test_unique_violation_becomes_constraint_violation():
    store, _ = _store(error=errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        store.create_account("p@example.com", "h")


def test_operational_error_becomes_store_unavailable():
    store, _ = _store(error=errors.OperationalError("connection refused"))

    with pytest.raises(StoreUnavailable) as exc_info:
        store.get_account_by_email("p@example.com")

    assert exc_info.value.backend == "postgres"
    assert exc_info.value.operation == "get_account_by_email"


def test_get_account_skips_query_for_malformed_id():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()

    assert store.get_account("not-a-uuid") is None


def test_conditional_status_update_parameters():
    store, conn = _store(_row(status="blocked", token_version=1))

    account = store.update_status(
        str(uuid.uuid4()),
        AccountStatus.BLOCKED,
        expected=[AccountStatus.ACTIVE],
        bump_token_version=True,
    )

    sql, params = conn.execute.call_args.args
    assert "status = ANY(%s)" in sql
    assert params[1] == 1
    assert params[4] == ["active"]
    assert account.status == AccountStatus.BLOCKED
    assert account.token_version == 1


def test_lost_race_returns_none():
    store, _ = _store(None)

    assert store.update_status(
        str(uuid.uuid4()), AccountStatus.ACTIVE, expected=[AccountStatus.BLOCKED]
    ) is None


def test_update_role_skips_deleted_rows():
    store, conn = _store(_row(role="admin", token_version=1))

    account = store.update_role(str(uuid.uuid4()), Role.ADMIN)

    sql, params = conn.execute.call_args.args
    assert "status <> 'deleted'" in sql
    assert params[:2] == ("admin", 1)
    assert account.role == Role.ADMIN


def test_include_deleted_orders_live_first():
    store, conn = _store(_row(status="deleted"))

    account = store.get_account_by_email("p@example.com", include_deleted=True)

    sql = conn.execute.call_args.args[0]
    assert "ORDER BY (status = 'deleted')" in sql
    assert account.is_deleted
