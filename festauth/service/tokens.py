from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from festauth.config import Settings
from festauth.logging import get_logger
from festauth.service.clock import Clock, SystemClock
from festauth.service.errors import AuthError, AuthErrorKind, TokenFailure
from festauth.storage.models import UserType

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "email", "user_type", "jti", "iss", "aud", "iat", "exp")


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    user_type: UserType
    jti: str
    issuer: str
    audience: Any
    issued_at: datetime
    expires_at: datetime


def _invalid(reason: TokenFailure) -> AuthError:
    return AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN, reason=reason)


class TokenIssuer:
    """Mints and checks HS256 access tokens, and generates opaque secrets.

    Refresh and single-use secrets never reach storage in the clear; only
    ``hash_secret`` output is persisted.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.clock: Clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Clock] = None
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            clock=clock,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(
        self, user_id: str, email: str, user_type: UserType
    ) -> AccessToken:
        now = self.clock.now()
        expires_at = now + self.access_ttl
        jti = str(uuid.uuid4())
        payload = {
            "sub": user_id,
            "email": email,
            "user_type": UserType(user_type).value,
            "jti": jti,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return AccessToken(token=self._encode_jwt(payload), expires_at=expires_at, jti=jti)

    def _decode_structure(self, token: Any) -> tuple[str, dict[str, Any], str]:
        if not isinstance(token, str):
            raise _invalid(TokenFailure.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise _invalid(TokenFailure.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error, UnicodeDecodeError):
            raise _invalid(TokenFailure.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise _invalid(TokenFailure.MALFORMED)
        if not isinstance(payload, dict) or any(c not in payload for c in _REQUIRED_CLAIMS):
            raise _invalid(TokenFailure.MALFORMED)
        return f"{header_b64}.{payload_b64}", payload, sig_b64

    def validate_access_token(self, token: Any) -> AccessClaims:
        signing_input, payload, sig_b64 = self._decode_structure(token)

        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            raise _invalid(TokenFailure.BAD_SIGNATURE)

        if payload.get("iss") != self.issuer:
            raise _invalid(TokenFailure.INVALID_ISSUER)

        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise _invalid(TokenFailure.INVALID_AUDIENCE)

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload["iat"])
            user_type = UserType(payload["user_type"])
        except (TypeError, ValueError):
            raise _invalid(TokenFailure.MALFORMED)
        if exp_ts <= self.clock.now().timestamp():
            raise _invalid(TokenFailure.EXPIRED)

        return AccessClaims(
            user_id=str(payload["sub"]),
            email=str(payload["email"]),
            user_type=user_type,
            jti=str(payload["jti"]),
            issuer=payload["iss"],
            audience=aud,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
        )

    @staticmethod
    def issue_refresh_secret() -> str:
        return secrets.token_urlsafe(64)

    @staticmethod
    def hash_secret(secret: str) -> str:
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
