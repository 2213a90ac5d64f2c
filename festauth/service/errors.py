from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each error carries an HTTP ``status_code`` and a stable ``error_code``
    string that the API envelope exposes to clients.
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


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    DUPLICATE_EMAIL = "duplicate_email"
    INVALID_TOKEN = "invalid_token"
    REUSE_DETECTED = "reuse_detected"
    INVALID_OR_EXPIRED = "invalid_or_expired"
    VALIDATION_ERROR = "validation_error"
    HASHING_FAILURE = "hashing_failure"
    INVALID_ACCESS_TOKEN = "invalid_access_token"


class TokenFailure(str, Enum):
    """Why an access token was rejected."""

    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_AUDIENCE = "invalid_audience"


# kind -> (status, error code, client-facing message)
_KIND_SURFACE: dict[AuthErrorKind, tuple[int, str, str]] = {
    AuthErrorKind.INVALID_CREDENTIALS: (401, "invalid_credentials", "invalid email or password"),
    AuthErrorKind.ACCOUNT_LOCKED: (423, "account_locked", "account is temporarily locked"),
    AuthErrorKind.EMAIL_NOT_VERIFIED: (403, "email_not_verified", "email address has not been verified"),
    AuthErrorKind.DUPLICATE_EMAIL: (409, "duplicate_email", "an account with this email already exists"),
    AuthErrorKind.INVALID_TOKEN: (401, "invalid_token", "invalid refresh token, please log in again"),
    # Replays look the same as any other dead refresh token to the caller
    AuthErrorKind.REUSE_DETECTED: (401, "invalid_token", "invalid refresh token, please log in again"),
    AuthErrorKind.INVALID_OR_EXPIRED: (400, "invalid_or_expired_token", "token is invalid or has expired"),
    AuthErrorKind.VALIDATION_ERROR: (400, "validation_error", "validation failed"),
    AuthErrorKind.HASHING_FAILURE: (500, "server_error", "internal server error"),
    AuthErrorKind.INVALID_ACCESS_TOKEN: (401, "unauthorized", "invalid access token"),
}


class AuthError(ServiceError):
    """Single error type for every authentication outcome.

    ``kind`` says what happened; the optional payload fields carry the data a
    caller needs for that kind:

    - ``until`` for ``ACCOUNT_LOCKED``
    - ``field`` (and a specific message) for ``VALIDATION_ERROR``
    - ``reason`` for ``INVALID_ACCESS_TOKEN``
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        message: Optional[str] = None,
        *,
        until: Optional[datetime] = None,
        field: Optional[str] = None,
        reason: Optional[TokenFailure] = None,
    ) -> None:
        status_code, error_code, default_message = _KIND_SURFACE[kind]
        detail: dict = {}
        if until is not None:
            detail["locked_until"] = until.isoformat()
        if field is not None:
            detail["field"] = field
        if reason is not None:
            detail["reason"] = reason.value
        # Internal failures never leak their cause to the client
        public_message = (
            default_message
            if kind is AuthErrorKind.HASHING_FAILURE
            else (message or default_message)
        )
        super().__init__(
            public_message,
            status_code=status_code,
            detail=detail,
            error_code=error_code,
        )
        self.kind = kind
        self.until = until
        self.field = field
        self.reason = reason
        self.internal_message = message

    @property
    def is_internal(self) -> bool:
        return self.kind is AuthErrorKind.HASHING_FAILURE

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value!r}, message={self.message!r})"

    @classmethod
    def validation(cls, field: str, message: str) -> "AuthError":
        return cls(AuthErrorKind.VALIDATION_ERROR, message, field=field)


__all__ = [
    "AuthError",
    "AuthErrorKind",
    "ServiceError",
    "TokenFailure",
]
