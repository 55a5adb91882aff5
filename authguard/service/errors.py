from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins a stable ``error_code`` and an HTTP ``status_code``;
    structured context travels in ``detail`` rather than in the message.
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


class WeakPasswordError(ValidationError):
    """New password does not satisfy the password policy (400)."""
    error_code = "weak_password"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


class Invalid2FACodeError(AuthenticationError):
    error_code = "invalid_2fa_code"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, tampered, expired, used, or bound to a dead session."""
    error_code = "invalid_token"


class AccountLockedError(ServiceError):
    """Too many failed attempts, or the account was blocked (423)."""
    status_code = 423
    error_code = "account_locked"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountSuspendedError(ForbiddenError):
    error_code = "account_suspended"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


class PasswordExpiredError(ForbiddenError):
    error_code = "password_expired"


class InsufficientPermissionsError(ForbiddenError):
    error_code = "insufficient_permissions"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "Invalid2FACodeError",
    "InvalidTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "AccountSuspendedError",
    "EmailNotVerifiedError",
    "PasswordExpiredError",
    "InsufficientPermissionsError",
    "NotFoundError",
    "ConflictError",
    "RateLimitExceededError",
    "ServerError",
]
