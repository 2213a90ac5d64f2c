"""MemoryStore behaviour: uniqueness, copies, lockout counters and snapshots."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from festauth.storage.errors import ConstraintViolation, RecordNotFound
from festauth.storage.memory import MemoryStore
from festauth.storage.models import (
    RefreshTokenRecord,
    RevocationReason,
    RotationStatus,
    SingleUseToken,
    TokenKind,
    User,
    UserType,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _user(email="fan@example.com", **kwargs):
    return User.new(email, "Festival Fan", "$argon2id$x", now=NOW, **kwargs)


class TestUsers:
    def test_duplicate_normalized_email_rejected(self):
        store = MemoryStore()
        store.create_user(_user("Fan@Example.com"))
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user(_user("fan@example.com"))
        assert exc_info.value.constraint == "email_unique"

    def test_deleted_user_releases_email(self):
        store = MemoryStore()
        first = store.create_user(_user())
        assert store.soft_delete_user(first.id, actor_id="system", now=NOW) is True
        assert store.get_user_by_email("fan@example.com") is None

        second = store.create_user(_user())
        assert store.get_user_by_email("fan@example.com").id == second.id
        assert store.get_user(first.id).is_deleted

    def test_soft_delete_twice_returns_false(self):
        store = MemoryStore()
        user = store.create_user(_user())
        store.soft_delete_user(user.id, actor_id="system", now=NOW)
        assert store.soft_delete_user(user.id, actor_id="system", now=NOW) is False

    def test_returned_objects_are_copies(self):
        store = MemoryStore()
        user = store.create_user(_user())
        fetched = store.get_user(user.id)
        fetched.email_verified = True
        assert store.get_user(user.id).email_verified is False

    def test_failed_logins_lock_on_threshold_and_reset_counter(self):
        store = MemoryStore()
        user = store.create_user(_user())
        until = NOW + timedelta(minutes=15)

        outcomes = [
            store.record_failed_login(user.id, threshold=5, lockout_until=until, now=NOW)
            for _ in range(5)
        ]

        assert [o.failed_login_attempts for o in outcomes] == [1, 2, 3, 4, 0]
        assert [o.locked_now for o in outcomes] == [False] * 4 + [True]
        stored = store.get_user(user.id)
        assert stored.lockout_end == until
        assert stored.is_locked(NOW)
        assert not stored.is_locked(until)

    def test_reset_failed_logins_clears_lockout(self):
        store = MemoryStore()
        user = store.create_user(_user())
        store.record_failed_login(
            user.id, threshold=1, lockout_until=NOW + timedelta(minutes=15), now=NOW
        )
        store.reset_failed_logins(user.id, now=NOW)
        stored = store.get_user(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.lockout_end is None

    def test_update_password_unknown_user(self):
        store = MemoryStore()
        with pytest.raises(RecordNotFound):
            store.update_password("missing", "hash", actor_id=None, now=NOW)

    def test_update_password_can_clear_lockout(self):
        store = MemoryStore()
        user = store.create_user(_user())
        store.record_failed_login(
            user.id, threshold=1, lockout_until=NOW + timedelta(minutes=15), now=NOW
        )
        store.update_password(user.id, "new-hash", actor_id="system", now=NOW, clear_lockout=True)
        stored = store.get_user(user.id)
        assert stored.password_hash == "new-hash"
        assert stored.lockout_end is None
        assert stored.modified_by == "system"


class TestTokens:
    def test_refresh_token_requires_user(self):
        store = MemoryStore()
        with pytest.raises(RecordNotFound):
            store.create_refresh_token(
                RefreshTokenRecord.new("missing", "hash", NOW + timedelta(days=1), now=NOW)
            )

    def test_refresh_token_hash_unique(self):
        store = MemoryStore()
        user = store.create_user(_user())
        store.create_refresh_token(
            RefreshTokenRecord.new(user.id, "hash", NOW + timedelta(days=1), now=NOW)
        )
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_refresh_token(
                RefreshTokenRecord.new(user.id, "hash", NOW + timedelta(days=1), now=NOW)
            )
        assert exc_info.value.constraint == "token_hash_unique"

    def test_rotate_unknown_hash(self):
        store = MemoryStore()
        user = store.create_user(_user())
        successor = RefreshTokenRecord.new(user.id, "next", NOW + timedelta(days=1), now=NOW)
        outcome = store.rotate_refresh_token("nope", successor, now=NOW)
        assert outcome.status is RotationStatus.NOT_FOUND
        assert store.get_refresh_token_by_hash("next") is None

    def test_rotate_revoked_for_other_reason_is_not_reuse(self):
        store = MemoryStore()
        user = store.create_user(_user())
        store.create_refresh_token(
            RefreshTokenRecord.new(user.id, "a", NOW + timedelta(days=1), now=NOW)
        )
        store.create_refresh_token(
            RefreshTokenRecord.new(user.id, "b", NOW + timedelta(days=1), now=NOW)
        )
        store.revoke_refresh_token("a", reason=RevocationReason.LOGOUT, now=NOW)

        successor = RefreshTokenRecord.new(user.id, "c", NOW + timedelta(days=1), now=NOW)
        outcome = store.rotate_refresh_token("a", successor, now=NOW)

        assert outcome.status is RotationStatus.REVOKED
        assert not store.get_refresh_token_by_hash("b").is_revoked

    def test_consume_single_use_token_once(self):
        store = MemoryStore()
        user = store.create_user(_user())
        store.create_single_use_token(
            SingleUseToken.new(
                user.id, TokenKind.EMAIL_VERIFICATION, "h", NOW + timedelta(hours=1), now=NOW
            )
        )
        first = store.consume_single_use_token("h", TokenKind.EMAIL_VERIFICATION, now=NOW)
        second = store.consume_single_use_token("h", TokenKind.EMAIL_VERIFICATION, now=NOW)
        assert first.is_used and first.used_at == NOW
        assert second is None


class TestSnapshot:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        store = MemoryStore(str(path))
        user = store.create_user(_user(user_type=UserType.ORGANIZER))
        store.create_refresh_token(
            RefreshTokenRecord.new(user.id, "rt", NOW + timedelta(days=7), now=NOW)
        )
        store.rotate_refresh_token(
            "rt",
            RefreshTokenRecord.new(user.id, "rt2", NOW + timedelta(days=7), now=NOW),
            now=NOW,
        )
        store.create_single_use_token(
            SingleUseToken.new(
                user.id, TokenKind.PASSWORD_RESET, "su", NOW + timedelta(hours=1), now=NOW
            )
        )

        reloaded = MemoryStore(str(path))

        loaded_user = reloaded.get_user_by_email("fan@example.com")
        assert loaded_user.id == user.id
        assert loaded_user.user_type is UserType.ORGANIZER
        old = reloaded.get_refresh_token_by_hash("rt")
        assert old.revoked_reason is RevocationReason.ROTATED
        assert old.replaced_by_id == reloaded.get_refresh_token_by_hash("rt2").id
        assert reloaded.get_single_use_token_by_hash("su").kind is TokenKind.PASSWORD_RESET

    def test_missing_snapshot_starts_empty(self, tmp_path):
        store = MemoryStore(str(tmp_path / "absent.json"))
        assert store.users == {}


class TestConcurrency:
    def test_concurrent_failures_never_lose_increments(self):
        store = MemoryStore()
        user = store.create_user(_user())
        barrier = threading.Barrier(10)
        until = NOW + timedelta(minutes=15)

        def worker():
            barrier.wait()
            store.record_failed_login(user.id, threshold=100, lockout_until=until, now=NOW)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_user(user.id).failed_login_attempts == 10
