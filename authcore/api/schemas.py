from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_correlation_id

# Longest address RFC 5321 allows in a path
MAX_EMAIL_LENGTH = 320
MAX_PASSWORD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "expired",
    "invalid_otp",
    "rate_limited",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class AdminLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class OtpRequest(BaseModel):
    # Format problems are not reported back; the engine treats them as a no-op
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)


class OtpVerifyRequest(BaseModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    otp: str = Field(..., max_length=16)


class AccountDeleteRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)


class SmtpConfigRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = Field(..., min_length=1, max_length=253)
    port: int = Field(..., ge=1, le=65535)
    username: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("host")
    @classmethod
    def _strip_host(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("host must not be blank")
        return stripped


class SmtpConfigUpdateRequest(BaseModel):
    """Partial SMTP update; omitted fields keep their stored values."""

    model_config = ConfigDict(extra="forbid")

    host: Optional[str] = Field(None, min_length=1, max_length=253)
    port: Optional[int] = Field(None, ge=1, le=65535)
    username: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("host")
    @classmethod
    def _strip_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        stripped = value.strip()
        if not stripped:
            raise ValueError("host must not be blank")
        return stripped


class CsrfResponse(BaseModel):
    csrf_token: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str
    subject_id: str
    role: str


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str


class OtpRequestResponse(BaseModel):
    accepted: bool = True


class SmtpConfigResponse(BaseModel):
    """Stored SMTP record; the password itself is never returned."""

    host: str
    port: int
    username: str
    password_set: bool
    updated_at: datetime
