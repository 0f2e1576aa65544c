from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sentinel_auth.config import Settings
from sentinel_auth.logging import get_logger
from sentinel_auth.storage.models import utcnow

logger = get_logger(__name__)

# Bytes of entropy behind each refresh token (64 url-safe characters)
REFRESH_TOKEN_BYTES = 48
# Bytes of entropy behind verification/reset tokens
ONE_SHOT_TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens.

    Access tokens carry ``sub`` and ``email`` and are checked with the shared
    secret alone. Refresh tokens carry no claims; they are only valid while a
    matching row exists in the credential store.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        clock_skew_leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("token issuer requires a signing secret")
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock
        self._clock_skew_leeway = clock_skew_leeway

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_pair(self, user_id: str, email: str) -> TokenPair:
        now = self._clock()
        access_expires_at = now + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(access_expires_at.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(payload),
            refresh_token=new_refresh_token(),
            access_expires_at=access_expires_at,
            refresh_expires_at=now + self.refresh_ttl,
        )

    def verify_access(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid, unexpired access token, else None."""
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        if not payload.get("sub"):
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        # Bytes on both sides: compare_digest rejects non-ASCII str arguments
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload


def new_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def new_one_shot_token() -> str:
    return secrets.token_urlsafe(ONE_SHOT_TOKEN_BYTES)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()
