from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every expected failure of the auth core is one of these. Each class pins an
    HTTP ``status_code`` and a stable ``error_code`` for the response envelope:

    - validation_error / duplicate_account / invalid_token / token_expired /
      already_verified (400)
    - unauthorized / invalid_credentials / account_deactivated /
      invalid_refresh_token (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
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
    """Malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateAccountError(ServiceError):
    """Email already registered (400)."""
    status_code = 400
    error_code = "duplicate_account"


class InvalidTokenError(ServiceError):
    """Purpose token is malformed, forged, for another purpose or superseded (400)."""
    status_code = 400
    error_code = "invalid_token"


class TokenExpiredError(ServiceError):
    """Purpose token is past its expiry (400)."""
    status_code = 400
    error_code = "token_expired"


class AlreadyVerifiedError(ServiceError):
    status_code = 400
    error_code = "already_verified"


class UnauthorizedError(ServiceError):
    """Missing, invalid or expired access credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(UnauthorizedError):
    """Wrong email or password. The message never says which."""
    error_code = "invalid_credentials"


class AccountDeactivatedError(UnauthorizedError):
    error_code = "account_deactivated"


class InvalidRefreshTokenError(UnauthorizedError):
    error_code = "invalid_refresh_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Concurrent modification could not be reconciled (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed logins; lock still active (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str, *, retry_after: int = 60, limit: Optional[int] = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotificationError(ServerError):
    """Outbound email could not be handed to the transport."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateAccountError",
    "InvalidTokenError",
    "TokenExpiredError",
    "AlreadyVerifiedError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "AccountDeactivatedError",
    "InvalidRefreshTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
    "NotificationError",
]
