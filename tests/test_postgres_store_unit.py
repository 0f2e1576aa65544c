from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from sentinel_auth.logging import get_logger
from sentinel_auth.storage.errors import ConstraintViolation, StoreUnavailable
from sentinel_auth.storage.models import TokenKind
from sentinel_auth.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays queued cursors in order."""

    def __init__(self):
        self.statements = []
        self.responses = []

    def queue(self, rows=None, rowcount=0, raises=None):
        self.responses.append((rows, rowcount, raises))

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if not self.responses:
            return FakeCursor()
        rows, rowcount, raises = self.responses.pop(0)
        if raises is not None:
            raise raises
        return FakeCursor(rows, rowcount)


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store.pool = FakePool(conn)
    store._active_conn = ContextVar("test_pg_conn", default=None)
    return store


def _user_row(**overrides):
    row = {
        "id": "u1",
        "email": "pg@example.com",
        "password_hash": "hash",
        "is_verified": False,
        "last_login_at": None,
        "last_login_ip": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_create_user_maps_unique_violation():
    conn = FakeConnection()
    conn.queue(raises=errors.UniqueViolation("duplicate key"))
    store = _store(conn)

    with pytest.raises(ConstraintViolation):
        store.create_user("pg@example.com", "hash")


def test_get_user_by_email_maps_row():
    conn = FakeConnection()
    conn.queue(rows=[_user_row(is_verified=True)])
    store = _store(conn)

    user = store.get_user_by_email("pg@example.com")

    assert user.id == "u1"
    assert user.is_verified is True
    assert conn.statements[0] == ("SELECT * FROM users WHERE email = %s", ("pg@example.com",))


def test_consume_token_is_single_delete_returning():
    conn = FakeConnection()
    conn.queue(
        rows=[
            {
                "id": "t1",
                "user_id": "u1",
                "token": "abc",
                "expires_at": NOW + timedelta(hours=1),
                "created_at": NOW,
            }
        ]
    )
    store = _store(conn)

    row = store.consume_token(TokenKind.PASSWORD_RESET, "abc", NOW)

    assert row.kind is TokenKind.PASSWORD_RESET
    assert row.user_id == "u1"
    sql, params = conn.statements[0]
    assert sql == "DELETE FROM password_reset_tokens WHERE token = %s AND expires_at > %s RETURNING *"
    assert params == ("abc", NOW)


def test_consume_refresh_token_missing_returns_none():
    conn = FakeConnection()
    conn.queue(rows=[])
    store = _store(conn)

    assert store.consume_refresh_token("gone", NOW) is None
    assert conn.statements[0][0].startswith("DELETE FROM refresh_tokens")


def test_delete_user_refresh_tokens_reports_rowcount():
    conn = FakeConnection()
    conn.queue(rowcount=3)
    store = _store(conn)

    assert store.delete_user_refresh_tokens("u1") == 3


def test_last_login_from_other_ip_query():
    conn = FakeConnection()
    conn.queue(
        rows=[
            {
                "id": "h1",
                "user_id": "u1",
                "ip_address": "203.0.113.1",
                "user_agent": None,
                "login_at": NOW,
                "was_notified": False,
            }
        ]
    )
    store = _store(conn)

    row = store.last_login_from_other_ip("u1", "198.51.100.1")

    assert row.ip_address == "203.0.113.1"
    sql, params = conn.statements[0]
    assert "ip_address <> %s" in sql
    assert "ORDER BY login_at DESC LIMIT 1" in sql
    assert params == ("u1", "198.51.100.1")


def test_transaction_reuses_one_connection():
    conn = FakeConnection()
    conn.queue(rows=[_user_row()])
    conn.queue(rowcount=1)
    conn.queue(rowcount=2)
    store = _store(conn)

    with store.transaction():
        store.get_user("u1")
        store.update_password("u1", "new-hash")
        store.delete_user_refresh_tokens("u1")

    assert store.pool.checkouts == 1
    assert len(conn.statements) == 3


def test_verify_required_schema_reports_missing_tables():
    conn = FakeConnection()
    for table in ("users", "email_verification_tokens", "password_reset_tokens"):
        conn.queue(rows=[{"oid": table}])
    conn.queue(rows=[{"oid": None}])
    conn.queue(rows=[{"oid": None}])
    store = _store(conn)

    with pytest.raises(StoreUnavailable) as exc_info:
        store._verify_required_schema()

    assert "login_history" in str(exc_info.value)
    assert "refresh_tokens" in str(exc_info.value)


def test_delete_expired_tokens_sums_all_tables():
    conn = FakeConnection()
    conn.queue(rowcount=1)
    conn.queue(rowcount=2)
    conn.queue(rowcount=4)
    store = _store(conn)

    assert store.delete_expired_tokens(NOW) == 7
    tables = [sql.split()[2] for sql, _ in conn.statements]
    assert tables == ["email_verification_tokens", "password_reset_tokens", "refresh_tokens"]
