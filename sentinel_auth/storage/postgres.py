from __future__ import annotations

import uuid
from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sentinel_auth.logging import get_logger
from sentinel_auth.storage.errors import ConstraintViolation, StoreUnavailable
from sentinel_auth.storage.models import (
    LoginHistory,
    OneShotToken,
    RefreshToken,
    TokenKind,
    User,
)

_TOKEN_TABLES = {
    TokenKind.EMAIL_VERIFICATION: "email_verification_tokens",
    TokenKind.PASSWORD_RESET: "password_reset_tokens",
}

REQUIRED_TABLES = (
    "users",
    "email_verification_tokens",
    "password_reset_tokens",
    "refresh_tokens",
    "login_history",
)


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool.

    ``transaction()`` pins one pooled connection to the current context; every
    store call made inside the block reuses it, so the whole block commits or
    rolls back together.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._active_conn: ContextVar[Any] = ContextVar(
            f"sentinel_pg_conn_{id(self)}", default=None
        )
        self._verify_required_schema()

    def _connect(self):
        active = self._active_conn.get()
        if active is not None:
            return nullcontext(active)
        return self.pool.connection()

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._active_conn.get() is not None:
            yield self
            return
        # pool.connection() commits on clean exit and rolls back on error
        with self.pool.connection() as conn:
            token = self._active_conn.set(conn)
            try:
                yield self
            finally:
                self._active_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply sentinel_auth/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            is_verified=row.get("is_verified", False),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _token_from_row(kind: TokenKind, row: dict) -> OneShotToken:
        return OneShotToken(
            id=str(row["id"]),
            kind=kind,
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _login_from_row(row: dict) -> LoginHistory:
        return LoginHistory(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            login_at=row["login_at"],
            was_notified=row.get("was_notified", False),
        )

    # -- users --------------------------------------------------------

    def create_user(self, email: str, password_hash: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_verified(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET is_verified = TRUE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
            return cur.rowcount > 0

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def record_last_login(self, user_id: str, ip_address: Optional[str], at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET last_login_at = %s, last_login_ip = %s, updated_at = %s
                WHERE id = %s
                """,
                (at, ip_address, at, user_id),
            )

    # -- one-shot tokens ----------------------------------------------

    def create_token(self, token: OneShotToken) -> OneShotToken:
        table = _TOKEN_TABLES[token.kind]
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {table} (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.user_id, token.token, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return token

    def consume_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[OneShotToken]:
        """Delete and return the row for ``token`` if it exists and is unexpired.

        A single DELETE ... RETURNING, so two concurrent redemptions of the same
        token cannot both receive the row.
        """
        table = _TOKEN_TABLES[kind]
        with self._connect() as conn:
            row = conn.execute(
                f"DELETE FROM {table} WHERE token = %s AND expires_at > %s RETURNING *",
                (token, now),
            ).fetchone()
        return self._token_from_row(kind, row) if row else None

    def delete_user_tokens(self, kind: TokenKind, user_id: str) -> int:
        table = _TOKEN_TABLES[kind]
        with self._connect() as conn:
            cur = conn.execute(f"DELETE FROM {table} WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def list_user_tokens(self, kind: TokenKind, user_id: str) -> List[OneShotToken]:
        table = _TOKEN_TABLES[kind]
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(kind, row) for row in rows]

    # -- refresh tokens -----------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token, expires_at, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token,
                        token.expires_at,
                        token.ip_address,
                        token.user_agent,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return token

    def get_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token = %s AND expires_at > %s",
                (token, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_tokens WHERE token = %s AND expires_at > %s RETURNING *",
                (token, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_tokens WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_tokens WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    # -- login history ------------------------------------------------

    def last_login_from_other_ip(
        self, user_id: str, ip_address: Optional[str]
    ) -> Optional[LoginHistory]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM login_history
                WHERE user_id = %s AND ip_address <> %s
                ORDER BY login_at DESC
                LIMIT 1
                """,
                (user_id, ip_address),
            ).fetchone()
        return self._login_from_row(row) if row else None

    def record_login(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        login_at: datetime,
        was_notified: bool,
    ) -> LoginHistory:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_history (id, user_id, ip_address, user_agent, login_at, was_notified)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), user_id, ip_address, user_agent, login_at, was_notified),
            ).fetchone()
        return self._login_from_row(row)

    def list_login_history(self, user_id: str, limit: int = 50) -> List[LoginHistory]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_history
                WHERE user_id = %s
                ORDER BY login_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._login_from_row(row) for row in rows]

    # -- housekeeping -------------------------------------------------

    def count_expired_tokens(self, now: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._connect() as conn:
            for kind, table in _TOKEN_TABLES.items():
                row = conn.execute(
                    f"SELECT count(*) AS n FROM {table} WHERE expires_at <= %s", (now,)
                ).fetchone()
                counts[kind.value] = int(row["n"])
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_tokens WHERE expires_at <= %s", (now,)
            ).fetchone()
            counts["refresh"] = int(row["n"])
        return counts

    def delete_expired_tokens(self, now: datetime) -> int:
        removed = 0
        with self.transaction():
            with self._connect() as conn:
                for table in (*_TOKEN_TABLES.values(), "refresh_tokens"):
                    cur = conn.execute(
                        f"DELETE FROM {table} WHERE expires_at <= %s", (now,)
                    )
                    removed += cur.rowcount
        return removed
