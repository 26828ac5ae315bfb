"""Unit tests for PostgresStore with the connection pool mocked out."""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from shopadmin.storage.errors import ConstraintViolation, StoreOperationError
from shopadmin.storage.models import RefreshTokenRecord, hash_token, utcnow
from shopadmin.storage.postgres import _SCHEMA, PostgresStore


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def store(conn):
    with patch("shopadmin.storage.postgres.ConnectionPool") as pool_cls:
        pool_cls.return_value.connection.return_value.__enter__.return_value = conn
        yield PostgresStore("postgresql://test/db", timeout=0.5)


def test_schema_created_on_startup(store, conn):
    executed = [call.args[0] for call in conn.execute.call_args_list]
    assert executed == list(_SCHEMA)


def test_duplicate_email_is_constraint_violation(store, conn):
    conn.execute.side_effect = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("a@example.com")
    assert exc_info.value.detail == {"field": "email"}


def test_unknown_user_on_refresh_save(store, conn):
    conn.execute.side_effect = errors.ForeignKeyViolation("fk")
    record = RefreshTokenRecord(
        token_hash=hash_token("tok"),
        user_id=str(uuid.uuid4()),
        jti="j1",
        expires_at=utcnow() + timedelta(days=1),
    )
    with pytest.raises(ConstraintViolation):
        store.save_refresh_token(record)


def test_connectivity_failure_is_store_error(store, conn):
    conn.execute.side_effect = errors.OperationalError("server closed the connection")
    with pytest.raises(StoreOperationError) as exc_info:
        store.get_refresh_token("abc")
    assert exc_info.value.operation == "get_refresh_token"


def test_pool_timeout_is_store_error(store):
    store.pool.connection.side_effect = PoolTimeout("pool exhausted")
    with pytest.raises(StoreOperationError):
        store.get_user_by_email("a@example.com")


def test_get_user_rejects_non_uuid_without_query(store, conn):
    conn.execute.reset_mock()
    assert store.get_user("not-a-uuid") is None
    conn.execute.assert_not_called()


def test_revoke_reports_whether_row_changed(store, conn):
    conn.execute.return_value.fetchone.return_value = {"token_hash": "h"}
    assert store.revoke_refresh_token("h") is True
    conn.execute.return_value.fetchone.return_value = None
    assert store.revoke_refresh_token("h") is False


def test_email_lookup_is_normalized(store, conn):
    conn.execute.return_value.fetchone.return_value = None
    store.get_user_by_email("  Admin@Example.COM ")
    assert conn.execute.call_args.args[1] == ("admin@example.com",)
