from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


class PostgresStore:
    """Postgres-backed store for users, refresh tokens and single-use tokens.

    State transitions that read before they write run inside one transaction
    holding a ``FOR UPDATE`` row lock, so concurrent rotations of the same
    refresh token serialize and exactly one of them succeeds.
    """

    required_tables = ("app_user", "refresh_token", "single_use_token")

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables have not been installed."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return None

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            email_normalized=row.get("email_normalized") or row["email"].casefold(),
            display_name=row.get("display_name") or "",
            password_hash=row["password_hash"],
            user_type=UserType(row.get("user_type") or UserType.ATTENDEE.value),
            email_verified=bool(row.get("email_verified", False)),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            lockout_end=self._parse_ts(row.get("lockout_end")),
            is_deleted=bool(row.get("is_deleted", False)),
            deleted_at=self._parse_ts(row.get("deleted_at")),
            created_at=self._parse_ts(row.get("created_at")),
            modified_at=self._parse_ts(row.get("modified_at")),
            created_by=row.get("created_by"),
            modified_by=row.get("modified_by"),
        )

    def _refresh_token_from_row(self, row: dict) -> RefreshTokenRecord:
        reason = row.get("revoked_reason")
        replaced_by = row.get("replaced_by_id")
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=self._parse_ts(row["expires_at"]),
            created_at=self._parse_ts(row.get("created_at")),
            created_by_ip=row.get("created_by_ip"),
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=self._parse_ts(row.get("revoked_at")),
            replaced_by_id=str(replaced_by) if replaced_by else None,
            revoked_reason=RevocationReason(reason) if reason else None,
        )

    def _single_use_token_from_row(self, row: dict) -> SingleUseToken:
        return SingleUseToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=TokenKind(row["kind"]),
            token_hash=row["token_hash"],
            expires_at=self._parse_ts(row["expires_at"]),
            created_at=self._parse_ts(row.get("created_at")),
            is_used=bool(row.get("is_used", False)),
            used_at=self._parse_ts(row.get("used_at")),
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, email_normalized, display_name, password_hash, user_type,
                        email_verified, failed_login_attempts, lockout_end, is_deleted,
                        created_at, modified_at, created_by, modified_by
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.email_normalized,
                        user.display_name,
                        user.password_hash,
                        user.user_type.value,
                        user.email_verified,
                        user.failed_login_attempts,
                        user.lockout_end,
                        user.is_deleted,
                        user.created_at,
                        user.modified_at,
                        user.created_by,
                        user.modified_by,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="email_unique"
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email_normalized: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email_normalized = %s AND NOT is_deleted",
                (email_normalized,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lockout_until: datetime,
        now: datetime,
    ) -> FailedLoginOutcome:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT failed_login_attempts, lockout_end FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row:
                raise RecordNotFound("user not found", {"user_id": user_id})
            attempts = (row.get("failed_login_attempts") or 0) + 1
            lockout_end = self._parse_ts(row.get("lockout_end"))
            locked_now = attempts >= threshold
            if locked_now:
                lockout_end = lockout_until
                attempts = 0
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = %s, lockout_end = %s, modified_at = %s
                WHERE id = %s
                """,
                (attempts, lockout_end, now, user_id),
            )
        return FailedLoginOutcome(
            failed_login_attempts=attempts,
            lockout_end=lockout_end,
            locked_now=locked_now,
        )

    def reset_failed_logins(self, user_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, lockout_end = NULL, modified_at = %s
                WHERE id = %s
                """,
                (now, user_id),
            )

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        actor_id: Optional[str],
        now: datetime,
        clear_lockout: bool = False,
    ) -> None:
        if clear_lockout:
            sql = """
                UPDATE app_user
                SET password_hash = %s, failed_login_attempts = 0, lockout_end = NULL,
                    modified_at = %s, modified_by = %s
                WHERE id = %s
            """
        else:
            sql = """
                UPDATE app_user
                SET password_hash = %s, modified_at = %s, modified_by = %s
                WHERE id = %s
            """
        with self._connect() as conn:
            result = conn.execute(sql, (password_hash, now, actor_id, user_id))
            if result.rowcount == 0:
                raise RecordNotFound("user not found", {"user_id": user_id})

    def mark_email_verified(
        self, user_id: str, *, actor_id: Optional[str], now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE, modified_at = %s, modified_by = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, actor_id, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def soft_delete_user(
        self, user_id: str, *, actor_id: Optional[str], now: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET is_deleted = TRUE, deleted_at = %s, modified_at = %s, modified_by = %s
                WHERE id = %s AND NOT is_deleted
                """,
                (now, now, actor_id, user_id),
            )
            return result.rowcount > 0

    # refresh tokens
    @staticmethod
    def _insert_refresh_token(conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at, created_by_ip)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.expires_at,
                record.created_at,
                record.created_by_ip,
            ),
        )

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already exists", constraint="token_hash_unique"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token user missing",
                {"user_id": record.user_id},
                constraint="user_fk",
            )
        return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return self._refresh_token_from_row(row)

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def rotate_refresh_token(
        self, token_hash: str, successor: RefreshTokenRecord, *, now: datetime
    ) -> RotationOutcome:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s FOR UPDATE",
                (token_hash,),
            ).fetchone()
            if not row:
                return RotationOutcome(status=RotationStatus.NOT_FOUND)
            record = self._refresh_token_from_row(row)

            if record.is_expired(now):
                if not record.is_revoked:
                    conn.execute(
                        """
                        UPDATE refresh_token
                        SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s
                        WHERE id = %s
                        """,
                        (now, RevocationReason.EXPIRED.value, record.id),
                    )
                    record.is_revoked = True
                    record.revoked_at = now
                    record.revoked_reason = RevocationReason.EXPIRED
                return RotationOutcome(status=RotationStatus.EXPIRED, record=record)

            if record.is_revoked:
                if record.revoked_reason is not RevocationReason.ROTATED:
                    return RotationOutcome(status=RotationStatus.REVOKED, record=record)
                result = conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s
                    WHERE user_id = %s AND NOT is_revoked
                    """,
                    (now, RevocationReason.REUSE_DETECTED.value, record.user_id),
                )
                return RotationOutcome(
                    status=RotationStatus.REUSED,
                    record=record,
                    revoked_count=result.rowcount,
                )

            self._insert_refresh_token(conn, successor)
            conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s, replaced_by_id = %s
                WHERE id = %s
                """,
                (now, RevocationReason.ROTATED.value, successor.id, record.id),
            )
            record.is_revoked = True
            record.revoked_at = now
            record.revoked_reason = RevocationReason.ROTATED
            record.replaced_by_id = successor.id
        return RotationOutcome(
            status=RotationStatus.ROTATED, record=record, successor=successor
        )

    def revoke_refresh_token(
        self, token_hash: str, *, reason: RevocationReason, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE token_hash = %s AND NOT is_revoked
                RETURNING *
                """,
                (now, reason.value, token_hash),
            ).fetchone()
        if not row:
            return None
        return self._refresh_token_from_row(row)

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: RevocationReason, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND NOT is_revoked
                """,
                (now, reason.value, user_id),
            )
            return result.rowcount

    # single-use tokens
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO single_use_token (id, user_id, kind, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.kind.value,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "token hash already exists", constraint="token_hash_unique"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "token user missing", {"user_id": token.user_id}, constraint="user_fk"
            )
        return token

    def get_single_use_token_by_hash(self, token_hash: str) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM single_use_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return self._single_use_token_from_row(row)

    def consume_single_use_token(
        self, token_hash: str, kind: TokenKind, *, now: datetime
    ) -> Optional[SingleUseToken]:
        # single conditional UPDATE: only one concurrent consumer gets the row back
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE single_use_token
                SET is_used = TRUE, used_at = %s
                WHERE token_hash = %s AND kind = %s AND NOT is_used AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, kind.value, now),
            ).fetchone()
        if not row:
            return None
        return self._single_use_token_from_row(row)

    def invalidate_single_use_tokens(
        self, user_id: str, kind: TokenKind, *, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE single_use_token
                SET is_used = TRUE, used_at = %s
                WHERE user_id = %s AND kind = %s AND NOT is_used
                """,
                (now, user_id, kind.value),
            )
            return result.rowcount
