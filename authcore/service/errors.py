from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds the auth core reports to callers."""

    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INVALID_OTP = "invalid_otp"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an ``ErrorKind``, an HTTP ``status_code`` and a stable
    ``error_code`` for the response envelope. ``message`` is always safe to
    return to the caller; anything diagnostic belongs in the logs.
    """

    kind: ErrorKind = ErrorKind.INVALID_INPUT
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
    kind = ErrorKind.INVALID_INPUT
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential missing, invalid, expired or revoked (401)."""
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = "not_found"


class OtpExpiredError(ServiceError):
    """OTP missing, expired, exhausted or already used (410)."""
    kind = ErrorKind.EXPIRED
    status_code = 410
    error_code = "expired"


class InvalidOtpError(ServiceError):
    """OTP did not match; the pending code stays live (400)."""
    kind = ErrorKind.INVALID_OTP
    status_code = 400
    error_code = "invalid_otp"


class RateLimitedError(ServiceError):
    """Rate limit or lockout in force (429)."""
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """Operational dependency such as the mail transport is unavailable (503)."""
    kind = ErrorKind.SERVICE_UNAVAILABLE
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "OtpExpiredError",
    "InvalidOtpError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
