"""Unit tests for argon2id password hashing."""

import time

import pytest

from conftest import CountingArgon2
from festauth.service.errors import AuthError, AuthErrorKind
from festauth.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(memory_cost=64, time_cost=1, parallelism=1)


class TestHashAndVerify:
    def test_hash_is_argon2id_and_salted(self, hasher):
        first = hasher.hash("correct horse battery")
        second = hasher.hash("correct horse battery")

        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_accepts_matching_password(self, hasher):
        encoded = hasher.hash("correct horse battery")
        assert hasher.verify("correct horse battery", encoded) is True

    def test_verify_rejects_wrong_password(self, hasher):
        encoded = hasher.hash("correct horse battery")
        assert hasher.verify("wrong horse battery", encoded) is False

    @pytest.mark.parametrize(
        "password,encoded",
        [
            ("", "$argon2id$v=19$m=64,t=1,p=1$c2FsdA$aGFzaA"),
            ("secret-secret", ""),
            (None, "$argon2id$v=19$m=64,t=1,p=1$c2FsdA$aGFzaA"),
            ("secret-secret", "not-a-hash"),
            ("secret-secret", "$argon2id$garbage"),
        ],
    )
    def test_verify_returns_false_for_bad_input(self, hasher, password, encoded):
        assert hasher.verify(password, encoded) is False

    def test_hash_rejects_empty_password(self, hasher):
        with pytest.raises(AuthError) as exc_info:
            hasher.hash("")
        assert exc_info.value.kind is AuthErrorKind.VALIDATION_ERROR
        assert exc_info.value.field == "password"


class TestRehash:
    def test_hash_under_current_costs_needs_no_rehash(self, hasher):
        assert hasher.needs_rehash(hasher.hash("correct horse battery")) is False

    def test_hash_under_older_costs_verifies_and_needs_rehash(self, hasher):
        stronger = PasswordHasher(memory_cost=128, time_cost=2, parallelism=1)
        legacy = hasher.hash("correct horse battery")

        assert stronger.verify("correct horse battery", legacy) is True
        assert stronger.needs_rehash(legacy) is True

    def test_malformed_hash_needs_rehash(self, hasher):
        assert hasher.needs_rehash("plaintext") is True


class TestDummyVerify:
    def test_dummy_verify_never_raises(self, hasher):
        hasher.dummy_verify("anything at all")
        hasher.dummy_verify("")
        hasher.dummy_verify(None)

    def test_dummy_hash_is_computed_once(self, hasher):
        hasher.dummy_verify("first")
        cached = hasher._dummy_hash
        hasher.dummy_verify("second")
        assert hasher._dummy_hash is cached


def _best_of(func, runs=3):
    timings = []
    for _ in range(runs):
        started = time.perf_counter()
        func()
        timings.append(time.perf_counter() - started)
    return min(timings)


class TestRejectionCost:
    """Every rejected password costs exactly one full argon2 verification."""

    @pytest.fixture
    def counted(self, hasher):
        hasher.dummy_verify("warm-up")
        hasher._hasher = CountingArgon2(hasher._hasher)
        return hasher

    @pytest.mark.parametrize(
        "password,encoded",
        [
            ("", None),
            (None, None),
            ("secret-secret", ""),
            ("secret-secret", "not-a-hash"),
            ("secret-secret", "$argon2id$garbage"),
        ],
    )
    def test_bad_input_still_runs_one_verification(self, counted, password, encoded):
        if encoded is None:
            encoded = counted.hash("correct horse battery")

        assert counted.verify(password, encoded) is False
        assert counted._hasher.completed == 1

    def test_wrong_password_runs_one_verification(self, counted):
        encoded = counted.hash("correct horse battery")
        assert counted.verify("wrong horse battery", encoded) is False
        assert counted._hasher.completed == 1

    def test_production_costs_give_comparable_timings(self):
        hasher = PasswordHasher()
        encoded = hasher.hash("correct horse battery")
        hasher.dummy_verify("warm-up")

        reference = _best_of(lambda: hasher.verify("wrong horse battery", encoded))
        for password, stored in [
            ("", encoded),
            ("correct horse battery", "$argon2id$garbage"),
            ("correct horse battery", "plaintext"),
        ]:
            elapsed = _best_of(lambda: hasher.verify(password, stored))
            assert elapsed >= reference * 0.3, (password, stored, elapsed, reference)
