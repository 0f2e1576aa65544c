from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from sentinel_auth.logging import get_logger
from sentinel_auth.storage.errors import ConstraintViolation
from sentinel_auth.storage.models import (
    LoginHistory,
    OneShotToken,
    RefreshToken,
    TokenKind,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and local development.

    All reads and writes go through one ``RLock``. ``transaction()`` holds the
    lock for the whole unit of work and restores the previous state if the
    block raises, so multi-step sequences are atomic the same way they are
    against Postgres. When ``fs_root`` is given, committed state is snapshotted
    to JSON and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[TokenKind, Dict[str, OneShotToken]] = {
            kind: {} for kind in TokenKind
        }
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.login_history: List[LoginHistory] = []
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- transactions -------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                # Nested blocks join the outer unit of work
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = self._snapshot()
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0
            self._persist_state()

    def _snapshot(self) -> dict:
        return copy.deepcopy(
            {
                "users": self.users,
                "tokens": self.tokens,
                "refresh_tokens": self.refresh_tokens,
                "login_history": self.login_history,
            }
        )

    def _restore(self, snapshot: dict) -> None:
        self.users = snapshot["users"]
        self.tokens = snapshot["tokens"]
        self.refresh_tokens = snapshot["refresh_tokens"]
        self.login_history = snapshot["login_history"]

    def _commit(self) -> None:
        """Persist immediately unless an enclosing transaction will."""
        if not self._tx_depth:
            self._persist_state()

    # -- users --------------------------------------------------------

    def create_user(self, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._commit()
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.copy(user) if user else None

    def mark_verified(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_verified = True
            user.updated_at = utcnow()
            self._commit()
            return True

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._commit()
            return True

    def record_last_login(self, user_id: str, ip_address: Optional[str], at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            user.last_login_ip = ip_address
            user.updated_at = at
            self._commit()

    # -- one-shot tokens ----------------------------------------------

    def create_token(self, token: OneShotToken) -> OneShotToken:
        with self._data_lock:
            table = self.tokens[token.kind]
            if token.token in table:
                raise ConstraintViolation("token already exists", {"field": "token"})
            table[token.token] = copy.copy(token)
            self._commit()
            return token

    def consume_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[OneShotToken]:
        """Delete and return the row for ``token`` if it exists and is unexpired."""
        with self._data_lock:
            table = self.tokens[kind]
            row = table.get(token)
            if row is None or not row.is_live(now):
                return None
            del table[token]
            self._commit()
            return row

    def delete_user_tokens(self, kind: TokenKind, user_id: str) -> int:
        with self._data_lock:
            table = self.tokens[kind]
            doomed = [key for key, row in table.items() if row.user_id == user_id]
            for key in doomed:
                del table[key]
            if doomed:
                self._commit()
            return len(doomed)

    def list_user_tokens(self, kind: TokenKind, user_id: str) -> List[OneShotToken]:
        with self._data_lock:
            return [
                copy.copy(row) for row in self.tokens[kind].values() if row.user_id == user_id
            ]

    # -- refresh tokens -----------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.refresh_tokens[token.token] = copy.copy(token)
            self._commit()
            return token

    def get_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if row is None or not row.is_live(now):
                return None
            return copy.copy(row)

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if row is None or not row.is_live(now):
                return None
            del self.refresh_tokens[token]
            self._commit()
            return row

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None) is not None
            if removed:
                self._commit()
            return removed

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [
                key for key, row in self.refresh_tokens.items() if row.user_id == user_id
            ]
            for key in doomed:
                del self.refresh_tokens[key]
            if doomed:
                self._commit()
            return len(doomed)

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [
                copy.copy(row)
                for row in self.refresh_tokens.values()
                if row.user_id == user_id
            ]

    # -- login history ------------------------------------------------

    def last_login_from_other_ip(
        self, user_id: str, ip_address: Optional[str]
    ) -> Optional[LoginHistory]:
        """Most recent login by ``user_id`` from an address other than ``ip_address``.

        Rows without an address never match, and neither does a missing
        current address, mirroring SQL ``<>`` semantics.
        """
        if ip_address is None:
            return None
        with self._data_lock:
            candidates = [
                row
                for row in self.login_history
                if row.user_id == user_id
                and row.ip_address is not None
                and row.ip_address != ip_address
            ]
            if not candidates:
                return None
            return copy.copy(max(candidates, key=lambda row: row.login_at))

    def record_login(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        login_at: datetime,
        was_notified: bool,
    ) -> LoginHistory:
        with self._data_lock:
            row = LoginHistory(
                id=str(uuid.uuid4()),
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                login_at=login_at,
                was_notified=was_notified,
            )
            self.login_history.append(row)
            self._commit()
            return copy.copy(row)

    def list_login_history(self, user_id: str, limit: int = 50) -> List[LoginHistory]:
        with self._data_lock:
            rows = [row for row in self.login_history if row.user_id == user_id]
            rows.sort(key=lambda row: row.login_at, reverse=True)
            return [copy.copy(row) for row in rows[:limit]]

    # -- housekeeping -------------------------------------------------

    def count_expired_tokens(self, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            counts = {
                kind.value: sum(1 for row in table.values() if not row.is_live(now))
                for kind, table in self.tokens.items()
            }
            counts["refresh"] = sum(
                1 for row in self.refresh_tokens.values() if not row.is_live(now)
            )
            return counts

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            removed = 0
            for table in self.tokens.values():
                expired = [key for key, row in table.items() if not row.is_live(now)]
                for key in expired:
                    del table[key]
                removed += len(expired)
            expired_refresh = [
                key for key, row in self.refresh_tokens.items() if not row.is_live(now)
            ]
            for key in expired_refresh:
                del self.refresh_tokens[key]
            removed += len(expired_refresh)
            if removed:
                self._commit()
            return removed

    def close(self) -> None:
        self._persist_state()

    # -- snapshots ----------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "tokens": [
                    self._serialize_token(t)
                    for table in self.tokens.values()
                    for t in table.values()
                ],
                "refresh_tokens": [
                    self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
                ],
                "login_history": [
                    self._serialize_login(row) for row in self.login_history
                ],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state))
            tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.tokens = {kind: {} for kind in TokenKind}
        for raw in data.get("tokens", []):
            token = self._deserialize_token(raw)
            self.tokens[token.kind][token.token] = token
        self.refresh_tokens = {
            raw["token"]: self._deserialize_refresh_token(raw)
            for raw in data.get("refresh_tokens", [])
        }
        self.login_history = [
            self._deserialize_login(raw) for raw in data.get("login_history", [])
        ]
        self.logger.info(
            "memory_store_loaded", path=str(path), users=len(self.users)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "is_verified": user.is_verified,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            is_verified=data.get("is_verified", False),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_token(self, token: OneShotToken) -> dict:
        return {
            "id": token.id,
            "kind": token.kind.value,
            "user_id": token.user_id,
            "token": token.token,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> OneShotToken:
        return OneShotToken(
            id=data["id"],
            kind=TokenKind(data["kind"]),
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token,
            "expires_at": self._serialize_datetime(token.expires_at),
            "ip_address": token.ip_address,
            "user_agent": token.user_agent,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_login(self, row: LoginHistory) -> dict:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "ip_address": row.ip_address,
            "user_agent": row.user_agent,
            "login_at": self._serialize_datetime(row.login_at),
            "was_notified": row.was_notified,
        }

    def _deserialize_login(self, data: dict) -> LoginHistory:
        return LoginHistory(
            id=data["id"],
            user_id=data["user_id"],
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            login_at=self._deserialize_datetime(data["login_at"]),
            was_notified=data.get("was_notified", False),
        )
