from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from festauth.logging import get_logger
from festauth.service.clock import Clock, SystemClock
from festauth.service.errors import AuthError, AuthErrorKind
from festauth.service.tokens import TokenIssuer
from festauth.storage.models import SingleUseToken, TokenKind

logger = get_logger(__name__)


class SingleUseTokenStore(Protocol):
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken: ...

    def consume_single_use_token(
        self, token_hash: str, kind: TokenKind, *, now: datetime
    ) -> Optional[SingleUseToken]: ...

    def invalidate_single_use_tokens(
        self, user_id: str, kind: TokenKind, *, now: datetime
    ) -> int: ...


class SingleUseTokenLedger:
    """Email-verification and password-reset secrets, each consumable once."""

    def __init__(
        self,
        store: SingleUseTokenStore,
        issuer: TokenIssuer,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.clock: Clock = clock or SystemClock()

    def issue(self, user_id: str, kind: TokenKind, ttl: timedelta) -> str:
        now = self.clock.now()
        secret = self.issuer.issue_refresh_secret()
        token = SingleUseToken.new(
            user_id, kind, self.issuer.hash_secret(secret), now + ttl, now=now
        )
        self.store.create_single_use_token(token)
        logger.info(
            "single_use_token_issued", user_id=user_id, kind=kind.value, record_id=token.id
        )
        return secret

    def consume(self, secret: str, kind: TokenKind) -> str:
        """Mark the token used and return its user id.

        Unknown, expired, already-used and wrong-kind secrets are
        indistinguishable to the caller.
        """
        if not secret:
            raise AuthError(AuthErrorKind.INVALID_OR_EXPIRED)
        token = self.store.consume_single_use_token(
            self.issuer.hash_secret(secret), kind, now=self.clock.now()
        )
        if token is None:
            raise AuthError(AuthErrorKind.INVALID_OR_EXPIRED)
        logger.info(
            "single_use_token_consumed",
            user_id=token.user_id,
            kind=kind.value,
            record_id=token.id,
        )
        return token.user_id

    def invalidate_all(self, user_id: str, kind: TokenKind) -> int:
        return self.store.invalidate_single_use_tokens(user_id, kind, now=self.clock.now())
