"""Refresh-token rotation, revocation and reuse detection."""

import threading
from datetime import timedelta

import pytest

from festauth.service.clock import ManualClock
from festauth.service.errors import AuthError, AuthErrorKind
from festauth.service.refresh import RefreshTokenLedger
from festauth.service.tokens import TokenIssuer
from festauth.storage.memory import MemoryStore
from festauth.storage.models import RevocationReason, User, UserType


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        "ledger-test-signing-key",
        issuer="FestConnect",
        audience="FestConnect",
        access_ttl=timedelta(minutes=15),
        clock=clock,
    )


@pytest.fixture
def ledger(store, issuer, clock):
    return RefreshTokenLedger(store, store, issuer, ttl=timedelta(days=7), clock=clock)


@pytest.fixture
def user(store, clock):
    return store.create_user(
        User.new(
            "fan@example.com",
            "Festival Fan",
            "$argon2id$placeholder",
            user_type=UserType.ATTENDEE,
            email_verified=True,
            now=clock.now(),
        )
    )


class TestIssue:
    def test_only_the_hash_is_stored(self, ledger, store, user):
        issued = ledger.issue(user, "10.0.0.1")

        stored = store.get_refresh_token_by_hash(TokenIssuer.hash_secret(issued.secret))
        assert stored is not None
        assert stored.token_hash != issued.secret
        assert stored.created_by_ip == "10.0.0.1"
        assert all(r.token_hash != issued.secret for r in store.list_refresh_tokens(user.id))

    def test_expiry_follows_ttl(self, ledger, user, clock):
        issued = ledger.issue(user)
        assert issued.record.expires_at == clock.now() + timedelta(days=7)


class TestRotate:
    def test_rotation_links_and_revokes_predecessor(self, ledger, store, user):
        issued = ledger.issue(user)
        pair = ledger.rotate(issued.secret, "10.0.0.2")

        old = store.get_refresh_token_by_hash(TokenIssuer.hash_secret(issued.secret))
        assert old.is_revoked
        assert old.revoked_reason is RevocationReason.ROTATED
        assert old.replaced_by_id == pair.refresh_record.id
        assert pair.refresh_secret != issued.secret
        assert pair.refresh_record.is_active(ledger.clock.now())
        assert pair.user.id == user.id
        assert pair.refresh_record.replaced_by_id is None

    def test_successor_rotates_again(self, ledger, user):
        issued = ledger.issue(user)
        second = ledger.rotate(issued.secret)
        third = ledger.rotate(second.refresh_secret)
        assert third.refresh_secret not in {issued.secret, second.refresh_secret}

    def test_unknown_secret_is_invalid(self, ledger):
        with pytest.raises(AuthError) as exc_info:
            ledger.rotate("never-issued")
        assert exc_info.value.kind is AuthErrorKind.INVALID_TOKEN

    def test_empty_secret_is_invalid(self, ledger):
        with pytest.raises(AuthError) as exc_info:
            ledger.rotate("")
        assert exc_info.value.kind is AuthErrorKind.INVALID_TOKEN

    def test_expired_token_is_revoked_and_rejected(self, ledger, store, user, clock):
        issued = ledger.issue(user)
        clock.advance(days=7)

        with pytest.raises(AuthError) as exc_info:
            ledger.rotate(issued.secret)

        assert exc_info.value.kind is AuthErrorKind.INVALID_TOKEN
        record = store.get_refresh_token_by_hash(TokenIssuer.hash_secret(issued.secret))
        assert record.is_revoked
        assert record.revoked_reason is RevocationReason.EXPIRED

    def test_logged_out_token_is_invalid_without_cascade(self, ledger, store, user):
        other_session = ledger.issue(user)
        issued = ledger.issue(user)
        assert ledger.revoke(issued.secret) is True

        with pytest.raises(AuthError) as exc_info:
            ledger.rotate(issued.secret)

        assert exc_info.value.kind is AuthErrorKind.INVALID_TOKEN
        survivor = store.get_refresh_token_by_hash(
            TokenIssuer.hash_secret(other_session.secret)
        )
        assert not survivor.is_revoked


class TestReuseDetection:
    def test_replayed_token_revokes_every_session(self, ledger, store, user):
        laptop = ledger.issue(user)
        phone = ledger.issue(user)
        rotated = ledger.rotate(laptop.secret)

        with pytest.raises(AuthError) as exc_info:
            ledger.rotate(laptop.secret)

        assert exc_info.value.kind is AuthErrorKind.REUSE_DETECTED
        assert exc_info.value.error_code == "invalid_token"
        assert exc_info.value.status_code == 401
        records = store.list_refresh_tokens(user.id)
        assert all(r.is_revoked for r in records)
        for secret in (phone.secret, rotated.refresh_secret):
            record = store.get_refresh_token_by_hash(TokenIssuer.hash_secret(secret))
            assert record.revoked_reason is RevocationReason.REUSE_DETECTED

    def test_successor_is_dead_after_reuse(self, ledger, user):
        issued = ledger.issue(user)
        rotated = ledger.rotate(issued.secret)
        with pytest.raises(AuthError):
            ledger.rotate(issued.secret)

        with pytest.raises(AuthError) as exc_info:
            ledger.rotate(rotated.refresh_secret)
        assert exc_info.value.kind is AuthErrorKind.INVALID_TOKEN

    def test_reuse_leaves_other_users_alone(self, ledger, store, user, clock):
        bystander = store.create_user(
            User.new("other@example.com", "Other Fan", "$argon2id$x", now=clock.now())
        )
        theirs = ledger.issue(bystander)
        issued = ledger.issue(user)
        ledger.rotate(issued.secret)
        with pytest.raises(AuthError):
            ledger.rotate(issued.secret)

        record = store.get_refresh_token_by_hash(TokenIssuer.hash_secret(theirs.secret))
        assert not record.is_revoked

    def test_concurrent_rotation_has_single_winner(self, ledger, user):
        issued = ledger.issue(user)
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(ledger.rotate(issued.secret))
            except AuthError as exc:
                errors.append(exc.kind)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 7
        assert errors.count(AuthErrorKind.REUSE_DETECTED) >= 1
        assert set(errors) <= {AuthErrorKind.REUSE_DETECTED, AuthErrorKind.INVALID_TOKEN}


class TestInactiveUser:
    def test_rotation_for_deleted_user_revokes_everything(self, ledger, store, user, clock):
        first = ledger.issue(user)
        ledger.issue(user)
        store.soft_delete_user(user.id, actor_id="system", now=clock.now())

        with pytest.raises(AuthError) as exc_info:
            ledger.rotate(first.secret)

        assert exc_info.value.kind is AuthErrorKind.INVALID_TOKEN
        reasons = {r.revoked_reason for r in store.list_refresh_tokens(user.id)}
        assert RevocationReason.USER_INACTIVE in reasons
        assert all(r.is_revoked for r in store.list_refresh_tokens(user.id))


class TestRevoke:
    def test_revoke_is_idempotent(self, ledger, user):
        issued = ledger.issue(user)
        assert ledger.revoke(issued.secret) is True
        assert ledger.revoke(issued.secret) is False

    def test_revoke_unknown_or_empty(self, ledger):
        assert ledger.revoke("never-issued") is False
        assert ledger.revoke("") is False

    def test_revoke_all_counts_active_sessions(self, ledger, store, user):
        for _ in range(3):
            ledger.issue(user)
        assert ledger.revoke_all(user.id) == 3
        assert ledger.revoke_all(user.id) == 0
        reasons = {r.revoked_reason for r in store.list_refresh_tokens(user.id)}
        assert reasons == {RevocationReason.LOGOUT_ALL}
