from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every failure carries a stable, machine-readable ``error_code`` and the
    HTTP status it maps to:

    - 400 ``VALIDATION_ERROR`` / ``WEAK_PASSWORD``
    - 401 authentication failures (``NO_TOKEN``, ``TOKEN_EXPIRED``, ...)
    - 403 ``RESOURCE_ACCESS_DENIED``
    - 409 ``DUPLICATE_HANDLE``
    - 423 ``ACCOUNT_LOCKED``
    - 429 ``RATE_LIMITED``
    - 500 ``SERVER_ERROR``
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class InvalidHandle(ValidationError):
    pass


class WeakPassword(ValidationError):
    error_code = "WEAK_PASSWORD"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class NoToken(AuthenticationError):
    error_code = "NO_TOKEN"


class TokenError(AuthenticationError):
    """An access token failed verification."""
    error_code = "INVALID_TOKEN"


class MalformedToken(TokenError):
    pass


class BadSignature(TokenError):
    pass


class TokenExpired(TokenError):
    error_code = "TOKEN_EXPIRED"


class TokenRevoked(AuthenticationError):
    error_code = "TOKEN_REVOKED"


class AccountNotFound(AuthenticationError):
    error_code = "USER_NOT_FOUND"


class InvalidCredentials(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"


class RefreshTokenError(AuthenticationError):
    """A refresh token could not be exchanged."""
    error_code = "REFRESH_NOT_FOUND"


class RefreshNotFound(RefreshTokenError):
    pass


class RefreshExpired(RefreshTokenError):
    error_code = "REFRESH_EXPIRED"


class RefreshMismatch(RefreshTokenError):
    error_code = "REFRESH_MISMATCH"


class AccountLocked(ServiceError):
    """Too many failed logins; the account is temporarily locked (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class OwnershipDenied(ServiceError):
    """The principal does not own the requested resource (403)."""
    status_code = 403
    error_code = "RESOURCE_ACCESS_DENIED"


class DuplicateHandle(ServiceError):
    """Handle already registered (409)."""
    status_code = 409
    error_code = "DUPLICATE_HANDLE"


class RateLimited(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class StorageFailure(ServiceError):
    """Backing storage failed; surfaced to clients without detail (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidHandle",
    "WeakPassword",
    "AuthenticationError",
    "NoToken",
    "TokenError",
    "MalformedToken",
    "BadSignature",
    "TokenExpired",
    "TokenRevoked",
    "AccountNotFound",
    "InvalidCredentials",
    "RefreshTokenError",
    "RefreshNotFound",
    "RefreshExpired",
    "RefreshMismatch",
    "AccountLocked",
    "OwnershipDenied",
    "DuplicateHandle",
    "RateLimited",
    "StorageFailure",
]
