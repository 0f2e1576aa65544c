from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, List, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from sentinel_auth.config import Settings
from sentinel_auth.logging import get_logger
from sentinel_auth.service.email import Notifier
from sentinel_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServerError,
)
from sentinel_auth.service.sessions import SessionTracker
from sentinel_auth.service.tokens import TokenIssuer, TokenPair, extract_bearer, new_one_shot_token
from sentinel_auth.storage.errors import ConstraintViolation
from sentinel_auth.storage.models import (
    LoginHistory,
    OneShotToken,
    RefreshToken,
    TokenKind,
    User,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Column widths in the credential store
MAX_IP_LENGTH = 45
MAX_USER_AGENT_LENGTH = 500

REGISTERED_MESSAGE = (
    "Registration successful. Please check your email to verify your account."
)
VERIFIED_MESSAGE = "Email verified successfully. You can now login."
RESEND_MESSAGE = (
    "If the account exists and is not yet verified, a verification email has been sent."
)
LOGGED_OUT_MESSAGE = "Logged out successfully"
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent."
RESET_MESSAGE = "Password reset successfully. Please login again."
CHANGED_MESSAGE = "Password changed successfully. Please login again."

INVALID_CREDENTIALS = "Invalid credentials"
UNVERIFIED_EMAIL = "Please verify your email before logging in"
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"
INVALID_RESET_TOKEN = "Invalid or expired reset token"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"


class CredentialStore(Protocol):
    def transaction(self) -> ContextManager[Any]: ...

    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_verified(self, user_id: str) -> bool: ...

    def update_password(self, user_id: str, password_hash: str) -> bool: ...

    def record_last_login(
        self, user_id: str, ip_address: Optional[str], at: datetime
    ) -> None: ...

    def create_token(self, token: OneShotToken) -> OneShotToken: ...

    def consume_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[OneShotToken]: ...

    def delete_user_tokens(self, kind: TokenKind, user_id: str) -> int: ...

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def consume_refresh_token(
        self, token: str, now: datetime
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def last_login_from_other_ip(
        self, user_id: str, ip_address: Optional[str]
    ) -> Optional[LoginHistory]: ...

    def record_login(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        login_at: datetime,
        was_notified: bool,
    ) -> LoginHistory: ...

    def list_login_history(self, user_id: str, limit: int = 50) -> List[LoginHistory]: ...

    def delete_expired_tokens(self, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    token_id: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    user: dict

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str:
        return self.tokens.refresh_token


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


class AuthService:
    """Registration, login, token rotation and password flows.

    Every multi-step write runs inside ``store.transaction()`` so a failure
    part way leaves no partial state behind. Emails are best-effort except
    the first verification email, without which a new account is unusable.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        issuer: TokenIssuer,
        notifier: Notifier,
        tracker: SessionTracker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.notifier = notifier
        self.tracker = tracker
        self._clock = clock
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            type=Type.ID,
        )
        # Verified against when the email is unknown so both paths cost one hash check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # -- passwords ----------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHashError, VerificationError):
            return False

    # -- one-shot tokens ----------------------------------------------

    def _issue_one_shot(self, kind: TokenKind, user_id: str) -> OneShotToken:
        if kind is TokenKind.EMAIL_VERIFICATION:
            ttl = timedelta(hours=self.settings.verification_token_ttl_hours)
        else:
            ttl = timedelta(minutes=self.settings.reset_token_ttl_minutes)
        token = OneShotToken.new(kind, user_id, new_one_shot_token(), ttl, now=self._clock())
        return self.store.create_token(token)

    def _redeem_one_shot(
        self,
        kind: TokenKind,
        token: str,
        on_redeem: Callable[[User], T],
        *,
        invalid_message: str,
    ) -> T:
        """Consume a single-use token and apply ``on_redeem`` to its user atomically.

        Missing, expired and already-redeemed tokens are indistinguishable.
        """
        if not token:
            raise BadRequestError(invalid_message)
        now = self._clock()
        with self.store.transaction():
            row = self.store.consume_token(kind, token, now)
            if row is None:
                self.logger.warning(
                    "one_shot_token_rejected", kind=kind.value, token_prefix=token[:8]
                )
                raise BadRequestError(invalid_message)
            user = self.store.get_user(row.user_id)
            if user is None:
                self.logger.error(
                    "one_shot_token_user_missing", kind=kind.value, user_id=row.user_id
                )
                raise NotFoundError("User not found")
            return on_redeem(user)

    # -- flows --------------------------------------------------------

    def register(self, email: str, password: str) -> dict:
        email = normalize_email(email)
        password_hash = self._hash_password(password)
        with self.store.transaction():
            if self.store.get_user_by_email(email):
                raise ConflictError("Email already registered")
            try:
                user = self.store.create_user(email, password_hash)
            except ConstraintViolation:
                raise ConflictError("Email already registered")
            token = self._issue_one_shot(TokenKind.EMAIL_VERIFICATION, user.id)
            # Sent inside the transaction: the store lock (memory) or pooled
            # connection (Postgres) is held for the duration of the send.
            receipt = self.notifier.send_email_verification(user.email, token.token)
            if not receipt:
                # Raising rolls back the user so the address can register again
                self.logger.error(
                    "registration_email_failed",
                    email_hash=_email_hash(email),
                    error=receipt.error,
                )
                raise ServerError(
                    "Unable to send verification email. Please try again later."
                )
        self.logger.info("user_registered", user_id=user.id)
        return {"message": REGISTERED_MESSAGE, "user": user.public()}

    def verify_email(self, token: str) -> dict:
        def _mark(user: User) -> User:
            self.store.mark_verified(user.id)
            # Leftover tokens for the same account must not verify it a second time
            self.store.delete_user_tokens(TokenKind.EMAIL_VERIFICATION, user.id)
            return user

        user = self._redeem_one_shot(
            TokenKind.EMAIL_VERIFICATION,
            token,
            _mark,
            invalid_message=INVALID_VERIFICATION_TOKEN,
        )
        self.logger.info("email_verified", user_id=user.id)
        return {"message": VERIFIED_MESSAGE}

    def resend_verification(self, email: str) -> dict:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None or user.is_verified:
            return {"message": RESEND_MESSAGE}
        with self.store.transaction():
            self.store.delete_user_tokens(TokenKind.EMAIL_VERIFICATION, user.id)
            token = self._issue_one_shot(TokenKind.EMAIL_VERIFICATION, user.id)
        receipt = self.notifier.send_email_verification(user.email, token.token)
        if not receipt:
            self.logger.warning(
                "verification_resend_not_delivered", user_id=user.id, error=receipt.error
            )
        else:
            self.logger.info("email_verification_requested", user_id=user.id)
        return {"message": RESEND_MESSAGE}

    def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        ip_address = _clip(ip_address, MAX_IP_LENGTH)
        user_agent = _clip(user_agent, MAX_USER_AGENT_LENGTH)
        user = self.store.get_user_by_email(email)
        if user is None:
            self._verify_password(self._dummy_hash, password)
            self.logger.info("login_failed", reason="unknown_email", email_hash=_email_hash(email))
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self._verify_password(user.password_hash, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.is_verified:
            self.logger.info("login_failed", reason="unverified", user_id=user.id)
            raise AuthenticationError(UNVERIFIED_EMAIL)

        self.tracker.track_login(user.id, ip_address, user_agent, user.email)

        tokens = self.issuer.issue_pair(user.id, user.email)
        now = self._clock()
        with self.store.transaction():
            self.store.record_last_login(user.id, ip_address, now)
            self.store.create_refresh_token(
                RefreshToken.new(
                    user.id,
                    tokens.refresh_token,
                    self.issuer.refresh_ttl,
                    now=now,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        user.last_login_at = now
        user.last_login_ip = ip_address
        self.logger.info("login_succeeded", user_id=user.id, ip_address=ip_address)
        return LoginResult(tokens=tokens, user=user.public())

    def refresh(self, presented_token: Optional[str]) -> TokenPair:
        """Rotate a refresh token: the presented one is spent, a new pair is issued."""
        if not presented_token:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        now = self._clock()
        with self.store.transaction():
            row = self.store.consume_refresh_token(presented_token, now)
            if row is None:
                self.logger.warning(
                    "refresh_token_rejected", token_prefix=presented_token[:8]
                )
                raise AuthenticationError(INVALID_REFRESH_TOKEN)
            user = self.store.get_user(row.user_id)
            if user is None:
                raise AuthenticationError("User not found")
            tokens = self.issuer.issue_pair(user.id, user.email)
            self.store.create_refresh_token(
                RefreshToken.new(
                    user.id,
                    tokens.refresh_token,
                    self.issuer.refresh_ttl,
                    now=now,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                )
            )
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return tokens

    def logout(self, presented_token: Optional[str]) -> dict:
        if presented_token:
            removed = self.store.delete_refresh_token(presented_token)
            self.logger.info("logout", session_found=removed)
        return {"message": LOGGED_OUT_MESSAGE}

    def forgot_password(self, email: str) -> dict:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return {"message": FORGOT_PASSWORD_MESSAGE}
        with self.store.transaction():
            # At most one live reset token per user
            self.store.delete_user_tokens(TokenKind.PASSWORD_RESET, user.id)
            token = self._issue_one_shot(TokenKind.PASSWORD_RESET, user.id)
        receipt = self.notifier.send_password_reset(user.email, token.token)
        if not receipt:
            self.logger.warning(
                "password_reset_email_not_delivered", user_id=user.id, error=receipt.error
            )
        else:
            self.logger.info("password_reset_requested", user_id=user.id)
        return {"message": FORGOT_PASSWORD_MESSAGE}

    def reset_password(self, token: str, new_password: str) -> dict:
        password_hash = self._hash_password(new_password)

        def _apply(user: User) -> tuple[User, int]:
            self.store.update_password(user.id, password_hash)
            return user, self.store.delete_user_refresh_tokens(user.id)

        user, revoked = self._redeem_one_shot(
            TokenKind.PASSWORD_RESET,
            token,
            _apply,
            invalid_message=INVALID_RESET_TOKEN,
        )
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        self._notify_password_changed(user)
        return {"message": RESET_MESSAGE}

    def change_password(self, user_id: str, current_password: str, new_password: str) -> dict:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not self._verify_password(user.password_hash, current_password):
            self.logger.info("password_change_rejected", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Current password is incorrect")
        if self._verify_password(user.password_hash, new_password):
            raise BadRequestError("New password must be different from current password")
        password_hash = self._hash_password(new_password)
        with self.store.transaction():
            if not self.store.update_password(user.id, password_hash):
                raise NotFoundError("User not found")
            revoked = self.store.delete_user_refresh_tokens(user.id)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        self._notify_password_changed(user)
        return {"message": CHANGED_MESSAGE}

    def _notify_password_changed(self, user: User) -> None:
        try:
            receipt = self.notifier.send_password_changed(user.email)
        except Exception as exc:
            self.logger.error(
                "password_changed_email_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not receipt:
            self.logger.warning(
                "password_changed_email_not_delivered", user_id=user.id, error=receipt.error
            )

    # -- bearer authentication ----------------------------------------

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` header to its identity without touching the store."""
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")
        claims = self.issuer.verify_access(token)
        if not claims:
            raise AuthenticationError("Invalid or expired access token")
        return AuthContext(
            user_id=str(claims["sub"]),
            email=str(claims.get("email", "")),
            token_id=claims.get("jti"),
        )

    def get_current_user(self, user_id: str) -> dict:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.public()

    # -- housekeeping -------------------------------------------------

    def purge_expired_tokens(self) -> int:
        removed = self.store.delete_expired_tokens(self._clock())
        self.logger.info("expired_tokens_purged", removed=removed)
        return removed
