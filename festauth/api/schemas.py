from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from festauth.logging import get_correlation_id
from festauth.storage.models import UserType

# Longest refresh or single-use secret accepted over the wire
MAX_SECRET_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "email_not_verified",
    "duplicate_email",
    "invalid_token",
    "invalid_or_expired_token",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# Field-level rules (length, format) are enforced by the service layer so that
# every failure carries the same validation_error shape.
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=1024)
    password: str = Field(..., max_length=1024)
    display_name: str = Field(..., max_length=1024)
    user_type: str = Field(default=UserType.ATTENDEE.value, max_length=32)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=1024)
    password: str = Field(..., max_length=1024)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_SECRET_LENGTH)


class EmailRequest(BaseModel):
    email: str = Field(..., max_length=1024)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., max_length=MAX_SECRET_LENGTH)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=MAX_SECRET_LENGTH)
    new_password: str = Field(..., max_length=1024)


class UserResponse(BaseModel):
    user_id: str
    email: str
    display_name: str
    user_type: UserType
    email_verified: bool
    created_at: datetime


class AuthResponse(BaseModel):
    user_id: str
    email: str
    display_name: str
    user_type: UserType
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"


class MessageResponse(BaseModel):
    message: str


class MeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email: str
    user_type: UserType
    expires_at: datetime
