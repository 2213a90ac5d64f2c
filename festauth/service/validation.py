from __future__ import annotations

import re
import unicodedata
from typing import Any

from festauth.service.errors import AuthError
from festauth.storage.models import UserType

MAX_EMAIL_LENGTH = 256
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128
MIN_DISPLAY_NAME_LENGTH = 2
MAX_DISPLAY_NAME_LENGTH = 100

# U+200B..U+200D and U+FEFF
_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
# U+202A..U+202E and U+2066..U+2069
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_unicode(value: str) -> str:
    """Strip spoofing characters and apply NFKC.

    Zero-width and bidi-override code points are removed before normalization so
    that visually identical addresses map to the same account.
    """
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: Any) -> str:
    """Canonical lookup form of an email: trimmed, NFKC, case-folded.

    No format checks; login uses this so a malformed address behaves like an
    unknown one.
    """
    if not isinstance(value, str):
        return ""
    return normalize_unicode(value.strip()).casefold()


def validate_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise AuthError.validation("email", "email is required")
    normalized = normalize_email(value)
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise AuthError.validation(
            "email", f"email must be at most {MAX_EMAIL_LENGTH} characters"
        )
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise AuthError.validation("email", "invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise AuthError.validation("email", "invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise AuthError.validation("email", "invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise AuthError.validation("email", "invalid email address format")
    return normalized


def validate_password(value: Any, *, field: str = "password") -> str:
    if not isinstance(value, str) or not value:
        raise AuthError.validation(field, "password is required")
    if len(value) < MIN_PASSWORD_LENGTH:
        raise AuthError.validation(
            field, f"password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if len(value) > MAX_PASSWORD_LENGTH:
        raise AuthError.validation(
            field, f"password must be at most {MAX_PASSWORD_LENGTH} characters"
        )
    return value


def validate_display_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise AuthError.validation("display_name", "display name is required")
    trimmed = normalize_unicode(value.strip())
    if len(trimmed) < MIN_DISPLAY_NAME_LENGTH:
        raise AuthError.validation(
            "display_name",
            f"display name must be at least {MIN_DISPLAY_NAME_LENGTH} characters",
        )
    if len(trimmed) > MAX_DISPLAY_NAME_LENGTH:
        raise AuthError.validation(
            "display_name",
            f"display name must be at most {MAX_DISPLAY_NAME_LENGTH} characters",
        )
    return trimmed


def validate_user_type(value: Any) -> UserType:
    if isinstance(value, UserType):
        return value
    if isinstance(value, str):
        try:
            return UserType(value.strip().lower())
        except ValueError:
            pass
    raise AuthError.validation("user_type", "user type must be 'attendee' or 'organizer'")


def require_token(value: Any, *, field: str = "token") -> str:
    if not isinstance(value, str) or not value.strip():
        raise AuthError.validation(field, f"{field} is required")
    return value.strip()
