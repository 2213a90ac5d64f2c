from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from festauth.logging import get_logger
from festauth.service.clock import Clock, SystemClock
from festauth.service.errors import AuthError, AuthErrorKind
from festauth.service.tokens import AccessToken, TokenIssuer
from festauth.storage.models import (
    RefreshTokenRecord,
    RevocationReason,
    RotationOutcome,
    RotationStatus,
    User,
)

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token_hash: str, successor: RefreshTokenRecord, *, now: datetime
    ) -> RotationOutcome: ...

    def revoke_refresh_token(
        self, token_hash: str, *, reason: RevocationReason, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: RevocationReason, now: datetime
    ) -> int: ...


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass(frozen=True)
class IssuedRefreshToken:
    secret: str
    record: RefreshTokenRecord


@dataclass(frozen=True)
class TokenPair:
    user: User
    access_token: AccessToken
    refresh_secret: str
    refresh_record: RefreshTokenRecord


class RefreshTokenLedger:
    """Issues, rotates and revokes refresh-token records.

    Each record goes Active -> Revoked exactly once. Rotation revokes the
    presented record and inserts its successor in one store call; presenting a
    record that was already rotated away is treated as theft and revokes every
    session the user has.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        users: UserLookup,
        issuer: TokenIssuer,
        *,
        ttl: timedelta,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.users = users
        self.issuer = issuer
        self.ttl = ttl
        self.clock: Clock = clock or SystemClock()

    def _new_record(
        self, user_id: str, client_ip: Optional[str], now: datetime
    ) -> tuple[str, RefreshTokenRecord]:
        secret = self.issuer.issue_refresh_secret()
        record = RefreshTokenRecord.new(
            user_id,
            self.issuer.hash_secret(secret),
            now + self.ttl,
            created_by_ip=client_ip,
            now=now,
        )
        return secret, record

    def issue(self, user: User, client_ip: Optional[str] = None) -> IssuedRefreshToken:
        now = self.clock.now()
        secret, record = self._new_record(user.id, client_ip, now)
        stored = self.store.create_refresh_token(record)
        logger.info("refresh_token_issued", user_id=user.id, record_id=stored.id)
        return IssuedRefreshToken(secret=secret, record=stored)

    def rotate(self, presented_secret: str, client_ip: Optional[str] = None) -> TokenPair:
        if not presented_secret:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        now = self.clock.now()
        token_hash = self.issuer.hash_secret(presented_secret)
        # owner never changes, so reading it ahead of the atomic rotate is safe
        existing = self.store.get_refresh_token_by_hash(token_hash)
        if existing is None:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        secret, successor = self._new_record(existing.user_id, client_ip, now)
        outcome = self.store.rotate_refresh_token(token_hash, successor, now=now)

        if outcome.status is RotationStatus.NOT_FOUND:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        if outcome.status is RotationStatus.EXPIRED:
            logger.info(
                "refresh_token_expired",
                user_id=outcome.record.user_id,
                record_id=outcome.record.id,
            )
            raise AuthError(AuthErrorKind.INVALID_TOKEN)
        if outcome.status is RotationStatus.REUSED:
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=outcome.record.user_id,
                record_id=outcome.record.id,
                revoked_count=outcome.revoked_count,
                client_ip=client_ip,
            )
            raise AuthError(AuthErrorKind.REUSE_DETECTED)
        if outcome.status is RotationStatus.REVOKED:
            raise AuthError(AuthErrorKind.INVALID_TOKEN)

        user = self.users.get_user(outcome.record.user_id)
        if user is None or user.is_deleted:
            revoked = self.store.revoke_user_refresh_tokens(
                outcome.record.user_id, reason=RevocationReason.USER_INACTIVE, now=now
            )
            logger.warning(
                "refresh_token_user_inactive",
                user_id=outcome.record.user_id,
                revoked_count=revoked,
            )
            raise AuthError(AuthErrorKind.INVALID_TOKEN)

        access = self.issuer.issue_access_token(user.id, user.email, user.user_type)
        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            record_id=outcome.record.id,
            successor_id=outcome.successor.id,
        )
        return TokenPair(
            user=user,
            access_token=access,
            refresh_secret=secret,
            refresh_record=outcome.successor,
        )

    def revoke(self, presented_secret: str) -> bool:
        if not presented_secret:
            return False
        revoked = self.store.revoke_refresh_token(
            self.issuer.hash_secret(presented_secret),
            reason=RevocationReason.LOGOUT,
            now=self.clock.now(),
        )
        if revoked:
            logger.info("refresh_token_revoked", user_id=revoked.user_id, record_id=revoked.id)
        return revoked is not None

    def revoke_all(
        self, user_id: str, reason: RevocationReason = RevocationReason.LOGOUT_ALL
    ) -> int:
        count = self.store.revoke_user_refresh_tokens(
            user_id, reason=reason, now=self.clock.now()
        )
        logger.info(
            "refresh_tokens_revoked_all",
            user_id=user_id,
            reason=reason.value,
            revoked_count=count,
        )
        return count
