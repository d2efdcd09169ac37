from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes the HTTP ``status_code`` placed in the response
    envelope and a stable ``error_code`` used in logs.
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Primary credential check failed (400)."""
    status_code = 400
    error_code = "authentication_failed"


class InvalidCredentialsError(AuthenticationError):
    """Unknown username or wrong password; the two are never distinguished."""

    def __init__(self) -> None:
        super().__init__("Invalid username or password")


class AccountLockedError(ServiceError):
    """Too many failed logins (403). Carries the remaining lockout time."""
    status_code = 403
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, now: datetime) -> None:
        remaining = max(0, int((locked_until - now).total_seconds() + 0.999))
        super().__init__(
            "Account is locked due to too many failed login attempts",
            detail={
                "lockedUntil": locked_until.isoformat(),
                "retryAfterSeconds": remaining,
            },
        )
        self.locked_until = locked_until
        self.retry_after_seconds = remaining


class TokenError(ServiceError):
    """Presented token is unknown or malformed (400)."""
    status_code = 400
    error_code = "invalid_token"


class TokenExpiredError(TokenError):
    """Presented token was valid but has expired (400)."""
    error_code = "token_expired"


class TwoFactorError(TokenError):
    """Two-factor challenge token or code rejected (400)."""
    error_code = "invalid_two_factor"

    def __init__(self, message: str = "Invalid token or code") -> None:
        super().__init__(message)


class UnauthorizedError(ServiceError):
    """Missing or invalid bearer credentials on a protected route (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Acting on another user's resource (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Registration clashes with an existing record (400)."""
    status_code = 400
    error_code = "conflict"


class UsernameTakenError(ConflictError):
    error_code = "username_taken"

    def __init__(self) -> None:
        super().__init__("Username already exists", detail={"field": "username"})


class EmailTakenError(ConflictError):
    error_code = "email_taken"

    def __init__(self) -> None:
        super().__init__("Email already exists", detail={"field": "email"})


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "TokenError",
    "TokenExpiredError",
    "TwoFactorError",
    "UnauthorizedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "UsernameTakenError",
    "EmailTakenError",
]
