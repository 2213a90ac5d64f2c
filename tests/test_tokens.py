"""Unit tests for access-token signing and validation."""

import base64
import json
from datetime import timedelta

import pytest

from festauth.service.clock import ManualClock
from festauth.service.errors import AuthError, AuthErrorKind, TokenFailure
from festauth.service.tokens import TokenIssuer
from festauth.storage.models import UserType

SECRET = "unit-test-signing-key-with-enough-entropy"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        SECRET,
        issuer="FestConnect",
        audience="FestConnect",
        access_ttl=timedelta(minutes=15),
        clock=clock,
    )


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _reason(exc_info) -> TokenFailure:
    assert exc_info.value.kind is AuthErrorKind.INVALID_ACCESS_TOKEN
    return exc_info.value.reason


class TestIssueAndValidate:
    def test_round_trip_carries_identity(self, issuer, clock):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ORGANIZER)
        claims = issuer.validate_access_token(token.token)

        assert claims.user_id == "user-1"
        assert claims.email == "a@example.com"
        assert claims.user_type is UserType.ORGANIZER
        assert claims.jti == token.jti
        assert claims.issuer == "FestConnect"
        assert claims.expires_at == clock.now() + timedelta(minutes=15)

    def test_each_token_gets_unique_jti(self, issuer):
        first = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        second = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        assert first.jti != second.jti

    def test_header_declares_hs256(self, issuer):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        header = json.loads(issuer._decode_segment(token.token.split(".")[0]))
        assert header == {"alg": "HS256", "typ": "JWT"}


class TestExpiry:
    def test_valid_one_second_before_expiry(self, issuer, clock):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        clock.advance(minutes=15, seconds=-1)
        issuer.validate_access_token(token.token)

    def test_expired_exactly_at_exp(self, issuer, clock):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        clock.advance(minutes=15)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(token.token)
        assert _reason(exc_info) is TokenFailure.EXPIRED


class TestRejections:
    @pytest.mark.parametrize(
        "token",
        ["", "abc", "a.b", "a..c", "a.b.c.d", "!!!.###.$$$", None, 42],
    )
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(token)
        assert _reason(exc_info) is TokenFailure.MALFORMED

    def test_foreign_secret_is_bad_signature(self, issuer, clock):
        other = TokenIssuer(
            "some-other-signing-key-entirely",
            issuer="FestConnect",
            audience="FestConnect",
            access_ttl=timedelta(minutes=15),
            clock=clock,
        )
        token = other.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(token.token)
        assert _reason(exc_info) is TokenFailure.BAD_SIGNATURE

    def test_tampered_payload_is_bad_signature(self, issuer):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        header, payload, sig = token.token.split(".")
        claims = json.loads(issuer._decode_segment(payload))
        claims["user_type"] = "organizer"
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(f"{header}.{_b64(claims)}.{sig}")
        assert _reason(exc_info) is TokenFailure.BAD_SIGNATURE

    def test_none_algorithm_is_rejected(self, issuer):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        _, payload, sig = token.token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.{sig}"
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(forged)
        assert _reason(exc_info) is TokenFailure.MALFORMED

    def test_missing_claim_is_malformed(self, issuer, clock):
        payload = {
            "sub": "user-1",
            "email": "a@example.com",
            "jti": "j",
            "iss": "FestConnect",
            "aud": "FestConnect",
            "iat": int(clock.now().timestamp()),
            "exp": int(clock.now().timestamp()) + 60,
        }
        token = issuer._encode_jwt(payload)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(token)
        assert _reason(exc_info) is TokenFailure.MALFORMED

    def test_wrong_issuer(self, clock, issuer):
        other = TokenIssuer(
            SECRET,
            issuer="SomeoneElse",
            audience="FestConnect",
            access_ttl=timedelta(minutes=15),
            clock=clock,
        )
        token = other.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(token.token)
        assert _reason(exc_info) is TokenFailure.INVALID_ISSUER

    def test_wrong_audience(self, clock, issuer):
        other = TokenIssuer(
            SECRET,
            issuer="FestConnect",
            audience="SomeoneElse",
            access_ttl=timedelta(minutes=15),
            clock=clock,
        )
        token = other.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(token.token)
        assert _reason(exc_info) is TokenFailure.INVALID_AUDIENCE

    def test_audience_list_containing_ours_is_accepted(self, issuer, clock):
        now = int(clock.now().timestamp())
        token = issuer._encode_jwt(
            {
                "sub": "user-1",
                "email": "a@example.com",
                "user_type": "attendee",
                "jti": "j",
                "iss": "FestConnect",
                "aud": ["Other", "FestConnect"],
                "iat": now,
                "exp": now + 60,
            }
        )
        assert issuer.validate_access_token(token).user_id == "user-1"

    def test_signature_checked_before_expiry(self, issuer, clock):
        token = issuer.issue_access_token("user-1", "a@example.com", UserType.ATTENDEE)
        clock.advance(hours=1)
        header, payload, _ = token.token.split(".")
        with pytest.raises(AuthError) as exc_info:
            issuer.validate_access_token(f"{header}.{payload}.AAAA")
        assert _reason(exc_info) is TokenFailure.BAD_SIGNATURE


class TestSecrets:
    def test_refresh_secrets_are_long_and_unique(self):
        secrets_seen = {TokenIssuer.issue_refresh_secret() for _ in range(50)}
        assert len(secrets_seen) == 50
        assert all(len(s) >= 80 for s in secrets_seen)

    def test_hash_secret_is_deterministic_and_unpadded(self):
        digest = TokenIssuer.hash_secret("abc")
        assert digest == TokenIssuer.hash_secret("abc")
        assert digest != TokenIssuer.hash_secret("abd")
        assert "=" not in digest
        assert len(digest) == 43

    def test_empty_signing_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("", issuer="x", audience="y", access_ttl=timedelta(minutes=1))
