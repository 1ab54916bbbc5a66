from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and the stable machine
    readable ``error_code`` placed in the response envelope:

    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - request_timeout (408)
    - conflict (409)
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
    """Malformed input or password policy violation (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, forged, unknown or already consumed (401)."""
    pass


class ExpiredTokenError(AuthenticationError):
    """Token was genuine but is past its expiry (401)."""
    pass


class AuthorizationError(ServiceError):
    """Authenticated but not allowed: role, permission, department, ownership (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RequestTimeoutError(ServiceError):
    status_code = 408
    error_code = "request_timeout"


class ConflictError(ServiceError):
    """Duplicate unique field, e.g. an email that is already registered (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitError(ServiceError):
    """Too many attempts inside the rate-limit window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "AuthorizationError",
    "NotFoundError",
    "RequestTimeoutError",
    "ConflictError",
    "RateLimitError",
    "ServerError",
]
