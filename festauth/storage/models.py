from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserType(str, Enum):
    ATTENDEE = "attendee"
    ORGANIZER = "organizer"


class TokenKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class RevocationReason(str, Enum):
    ROTATED = "rotated"
    REUSE_DETECTED = "reuse_detected"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_RESET = "password_reset"
    EXPIRED = "expired"
    USER_INACTIVE = "user_inactive"


@dataclass
class User:
    id: str
    email: str
    email_normalized: str
    display_name: str
    password_hash: str
    user_type: UserType = UserType.ATTENDEE
    email_verified: bool = False
    failed_login_attempts: int = 0
    lockout_end: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    modified_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None
    modified_by: Optional[str] = None

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_end is not None and self.lockout_end > now

    @classmethod
    def new(
        cls,
        email: str,
        display_name: str,
        password_hash: str,
        *,
        user_type: UserType = UserType.ATTENDEE,
        email_verified: bool = False,
        email_normalized: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "User":
        stamp = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            email_normalized=email_normalized or email.strip().casefold(),
            display_name=display_name,
            password_hash=password_hash,
            user_type=user_type,
            email_verified=email_verified,
            created_at=stamp,
            modified_at=stamp,
            created_by=actor_id,
            modified_by=actor_id,
        )


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    created_by_ip: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by_id: Optional[str] = None
    revoked_reason: Optional[RevocationReason] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        created_by_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now or _utcnow(),
            created_by_ip=created_by_ip,
        )


@dataclass
class SingleUseToken:
    id: str
    user_id: str
    kind: TokenKind
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    is_used: bool = False
    used_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and self.expires_at > now

    @classmethod
    def new(
        cls,
        user_id: str,
        kind: TokenKind,
        token_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> "SingleUseToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now or _utcnow(),
        )


class RotationStatus(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REUSED = "reused"
    REVOKED = "revoked"
    ROTATED = "rotated"


@dataclass
class RotationOutcome:
    """Result of one atomic rotate attempt against a refresh-token store."""

    status: RotationStatus
    record: Optional[RefreshTokenRecord] = None
    successor: Optional[RefreshTokenRecord] = None
    revoked_count: int = 0


@dataclass
class FailedLoginOutcome:
    """State of the user row after an atomic failed-login update."""

    failed_login_attempts: int
    lockout_end: Optional[datetime]
    locked_now: bool = False
