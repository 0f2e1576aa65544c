from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    """Single-use token families, one table each."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    is_verified: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public(self) -> Dict[str, object]:
        """Projection safe to hand to clients; never includes the hash."""
        return {"id": self.id, "email": self.email, "is_verified": self.is_verified}


@dataclass
class OneShotToken:
    """Verification or reset token: redeemable exactly once before expires_at."""

    id: str
    kind: TokenKind
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, kind: TokenKind, user_id: str, token: str, ttl: timedelta, *, now: datetime
    ) -> "OneShotToken":
        return cls(
            id=str(uuid.uuid4()),
            kind=kind,
            user_id=user_id,
            token=token,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str = field(repr=False)
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl: timedelta,
        *,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class LoginHistory:
    id: str
    user_id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    login_at: datetime
    was_notified: bool = False
