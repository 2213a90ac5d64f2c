from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from festauth.logging import get_logger
from festauth.storage.errors import ConstraintViolation, RecordNotFound
from festauth.storage.models import (
    FailedLoginOutcome,
    RefreshTokenRecord,
    RevocationReason,
    RotationOutcome,
    RotationStatus,
    SingleUseToken,
    TokenKind,
    User,
    UserType,
)


class MemoryStore:
    """In-memory backing store for tests and single-process deployments.

    Every public method runs under one re-entrant lock, so each read-then-write
    transition (failed-login increment, rotation, single-use consumption) is
    atomic with respect to concurrent callers. Callers receive copies; mutating
    a returned object never changes stored state.

    When ``state_path`` is given, state is snapshotted to JSON after each write
    and reloaded on construction.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.single_use_tokens: Dict[str, SingleUseToken] = {}
        # token_hash -> id indexes
        self._refresh_by_hash: Dict[str, str] = {}
        self._single_use_by_hash: Dict[str, str] = {}
        # RLock so helpers can re-enter from within a locked method
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if any(
                existing.email_normalized == user.email_normalized
                and not existing.is_deleted
                for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="email_unique"
                )
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email_normalized: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_normalized == email_normalized and not u.is_deleted
                ),
                None,
            )
            return replace(user) if user else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return user

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lockout_until: datetime,
        now: datetime,
    ) -> FailedLoginOutcome:
        with self._data_lock:
            user = self._require_user(user_id)
            attempts = user.failed_login_attempts + 1
            locked_now = attempts >= threshold
            if locked_now:
                user.lockout_end = lockout_until
                attempts = 0
            user.failed_login_attempts = attempts
            user.modified_at = now
            self._persist_state()
            return FailedLoginOutcome(
                failed_login_attempts=attempts,
                lockout_end=user.lockout_end,
                locked_now=locked_now,
            )

    def reset_failed_logins(self, user_id: str, *, now: datetime) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts = 0
            user.lockout_end = None
            user.modified_at = now
            self._persist_state()

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        actor_id: Optional[str],
        now: datetime,
        clear_lockout: bool = False,
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_hash = password_hash
            if clear_lockout:
                user.failed_login_attempts = 0
                user.lockout_end = None
            user.modified_at = now
            user.modified_by = actor_id
            self._persist_state()

    def mark_email_verified(
        self, user_id: str, *, actor_id: Optional[str], now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.modified_at = now
            user.modified_by = actor_id
            self._persist_state()
            return replace(user)

    def soft_delete_user(
        self, user_id: str, *, actor_id: Optional[str], now: datetime
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_deleted:
                return False
            user.is_deleted = True
            user.deleted_at = now
            user.modified_at = now
            user.modified_by = actor_id
            self._persist_state()
            return True

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            self._insert_refresh_token(record)
            self._persist_state()
            return replace(record)

    def _insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        self._require_user(record.user_id)
        if record.token_hash in self._refresh_by_hash:
            raise ConstraintViolation(
                "refresh token hash already exists", constraint="token_hash_unique"
            )
        self.refresh_tokens[record.id] = replace(record)
        self._refresh_by_hash[record.token_hash] = record.id

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            return replace(record) if record else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return sorted(
                (replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id),
                key=lambda r: r.created_at,
            )

    @staticmethod
    def _mark_revoked(
        record: RefreshTokenRecord,
        reason: RevocationReason,
        now: datetime,
        replaced_by_id: Optional[str] = None,
    ) -> None:
        record.is_revoked = True
        record.revoked_at = now
        record.revoked_reason = reason
        record.replaced_by_id = replaced_by_id

    def _revoke_user_tokens(
        self, user_id: str, reason: RevocationReason, now: datetime
    ) -> int:
        revoked = 0
        for record in self.refresh_tokens.values():
            if record.user_id == user_id and not record.is_revoked:
                self._mark_revoked(record, reason, now)
                revoked += 1
        return revoked

    def rotate_refresh_token(
        self, token_hash: str, successor: RefreshTokenRecord, *, now: datetime
    ) -> RotationOutcome:
        with self._data_lock:
            record_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if record is None:
                return RotationOutcome(status=RotationStatus.NOT_FOUND)
            if record.is_expired(now):
                if not record.is_revoked:
                    self._mark_revoked(record, RevocationReason.EXPIRED, now)
                    self._persist_state()
                return RotationOutcome(status=RotationStatus.EXPIRED, record=replace(record))
            if record.is_revoked:
                if record.revoked_reason is not RevocationReason.ROTATED:
                    return RotationOutcome(
                        status=RotationStatus.REVOKED, record=replace(record)
                    )
                revoked = self._revoke_user_tokens(
                    record.user_id, RevocationReason.REUSE_DETECTED, now
                )
                self._persist_state()
                return RotationOutcome(
                    status=RotationStatus.REUSED,
                    record=replace(record),
                    revoked_count=revoked,
                )
            self._insert_refresh_token(successor)
            self._mark_revoked(record, RevocationReason.ROTATED, now, successor.id)
            self._persist_state()
            return RotationOutcome(
                status=RotationStatus.ROTATED,
                record=replace(record),
                successor=replace(successor),
            )

    def revoke_refresh_token(
        self, token_hash: str, *, reason: RevocationReason, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if record is None or record.is_revoked:
                return None
            self._mark_revoked(record, reason, now)
            self._persist_state()
            return replace(record)

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: RevocationReason, now: datetime
    ) -> int:
        with self._data_lock:
            revoked = self._revoke_user_tokens(user_id, reason, now)
            if revoked:
                self._persist_state()
            return revoked

    # single-use tokens
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        with self._data_lock:
            self._require_user(token.user_id)
            if token.token_hash in self._single_use_by_hash:
                raise ConstraintViolation(
                    "token hash already exists", constraint="token_hash_unique"
                )
            self.single_use_tokens[token.id] = replace(token)
            self._single_use_by_hash[token.token_hash] = token.id
            self._persist_state()
            return replace(token)

    def get_single_use_token_by_hash(self, token_hash: str) -> Optional[SingleUseToken]:
        with self._data_lock:
            token_id = self._single_use_by_hash.get(token_hash)
            token = self.single_use_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def consume_single_use_token(
        self, token_hash: str, kind: TokenKind, *, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._data_lock:
            token_id = self._single_use_by_hash.get(token_hash)
            token = self.single_use_tokens.get(token_id) if token_id else None
            if token is None or token.kind is not kind or not token.is_valid(now):
                return None
            token.is_used = True
            token.used_at = now
            self._persist_state()
            return replace(token)

    def invalidate_single_use_tokens(
        self, user_id: str, kind: TokenKind, *, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.single_use_tokens.values():
                if token.user_id == user_id and token.kind is kind and not token.is_used:
                    token.is_used = True
                    token.used_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    # snapshot persistence
    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "single_use_tokens": [
                self._serialize_single_use_token(t)
                for t in self.single_use_tokens.values()
            ],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.single_use_tokens = {
            t["id"]: self._deserialize_single_use_token(t)
            for t in data.get("single_use_tokens", [])
        }
        self._refresh_by_hash = {r.token_hash: r.id for r in self.refresh_tokens.values()}
        self._single_use_by_hash = {
            t.token_hash: t.id for t in self.single_use_tokens.values()
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "email_normalized": user.email_normalized,
            "display_name": user.display_name,
            "password_hash": user.password_hash,
            "user_type": user.user_type.value,
            "email_verified": user.email_verified,
            "failed_login_attempts": user.failed_login_attempts,
            "lockout_end": self._serialize_datetime(user.lockout_end),
            "is_deleted": user.is_deleted,
            "deleted_at": self._serialize_datetime(user.deleted_at),
            "created_at": self._serialize_datetime(user.created_at),
            "modified_at": self._serialize_datetime(user.modified_at),
            "created_by": user.created_by,
            "modified_by": user.modified_by,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            email_normalized=data.get("email_normalized") or data["email"].casefold(),
            display_name=data.get("display_name", ""),
            password_hash=data["password_hash"],
            user_type=UserType(data.get("user_type", UserType.ATTENDEE.value)),
            email_verified=data.get("email_verified", False),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            lockout_end=self._deserialize_datetime(data.get("lockout_end")),
            is_deleted=data.get("is_deleted", False),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            modified_at=self._deserialize_datetime(data["modified_at"]),
            created_by=data.get("created_by"),
            modified_by=data.get("modified_by"),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "created_by_ip": record.created_by_ip,
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by_id": record.replaced_by_id,
            "revoked_reason": record.revoked_reason.value if record.revoked_reason else None,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        reason = data.get("revoked_reason")
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            created_by_ip=data.get("created_by_ip"),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by_id=data.get("replaced_by_id"),
            revoked_reason=RevocationReason(reason) if reason else None,
        )

    def _serialize_single_use_token(self, token: SingleUseToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "kind": token.kind.value,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "is_used": token.is_used,
            "used_at": self._serialize_datetime(token.used_at),
        }

    def _deserialize_single_use_token(self, data: dict) -> SingleUseToken:
        return SingleUseToken(
            id=data["id"],
            user_id=data["user_id"],
            kind=TokenKind(data["kind"]),
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_used=data.get("is_used", False),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )
