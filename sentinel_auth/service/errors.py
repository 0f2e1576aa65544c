from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by the auth flows and rendered by the HTTP error envelope.

    Subclasses pin the HTTP status and the envelope ``code``. Messages are
    shown to the caller verbatim, so they never say whether an account exists.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Unusable verification or reset token, or a rejected new password."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials, unverified email, or a missing, expired or spent token."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """The account behind a valid token no longer exists."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Registration for an email that already has an account."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Per-client or per-account request window exhausted; carries ``retry_after``."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """The verification email for a new account could not be delivered."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
