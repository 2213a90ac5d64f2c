from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from festauth.config import Settings
from festauth.logging import email_fingerprint, get_logger
from festauth.service.clock import Clock, SystemClock
from festauth.service.email import EmailDispatcher
from festauth.service.errors import AuthError, AuthErrorKind
from festauth.service.passwords import PasswordHasher
from festauth.service.refresh import RefreshTokenLedger, RefreshTokenStore, TokenPair
from festauth.service.single_use import SingleUseTokenLedger, SingleUseTokenStore
from festauth.service.tokens import AccessClaims, TokenIssuer
from festauth.service.validation import (
    normalize_email,
    normalize_unicode,
    require_token,
    validate_display_name,
    validate_email,
    validate_password,
    validate_user_type,
)
from festauth.storage.errors import ConstraintViolation
from festauth.storage.models import (
    FailedLoginOutcome,
    RevocationReason,
    TokenKind,
    User,
    UserType,
)

logger = get_logger(__name__)

VERIFICATION_SENT_MESSAGE = (
    "If that email exists in our system, a verification email has been sent."
)
RESET_SENT_MESSAGE = (
    "If that email exists in our system, a password reset link has been sent."
)
EMAIL_VERIFIED_MESSAGE = "Email verified successfully."
PASSWORD_RESET_MESSAGE = "Password has been reset successfully. Please log in again."


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email_normalized: str) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lockout_until: datetime,
        now: datetime,
    ) -> FailedLoginOutcome: ...

    def reset_failed_logins(self, user_id: str, *, now: datetime) -> None: ...

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        actor_id: Optional[str],
        now: datetime,
        clear_lockout: bool = False,
    ) -> None: ...

    def mark_email_verified(
        self, user_id: str, *, actor_id: Optional[str], now: datetime
    ) -> Optional[User]: ...


class AuthStore(UserStore, RefreshTokenStore, SingleUseTokenStore, Protocol):
    """Everything the authentication flows need from one backing store."""


@dataclass(frozen=True)
class AuthResult:
    user_id: str
    email: str
    display_name: str
    user_type: UserType
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"


@dataclass(frozen=True)
class RegistrationResult:
    user_id: str
    email: str
    display_name: str
    user_type: UserType
    email_verified: bool
    created_at: datetime


@dataclass(frozen=True)
class MessageResult:
    message: str


class AuthenticationService:
    """Login, registration, session rotation and account-recovery flows.

    Stores are synchronous; the flows are ``async`` so that blocking SMTP
    delivery can be pushed to a worker thread without stalling the event loop.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: EmailDispatcher,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasher] = None,
        issuer: Optional[TokenIssuer] = None,
        refresh_ledger: Optional[RefreshTokenLedger] = None,
        single_use_ledger: Optional[SingleUseTokenLedger] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.email = email
        self.clock: Clock = clock or SystemClock()
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.issuer = issuer or TokenIssuer.from_settings(settings, clock=self.clock)
        self.refresh = refresh_ledger or RefreshTokenLedger(
            store,
            store,
            self.issuer,
            ttl=timedelta(days=settings.refresh_token_ttl_days),
            clock=self.clock,
        )
        self.single_use = single_use_ledger or SingleUseTokenLedger(
            store, self.issuer, clock=self.clock
        )
        self.system_actor_id = settings.system_actor_id
        self.lockout_window = timedelta(minutes=settings.lockout_minutes)
        self.verification_ttl = timedelta(hours=settings.email_verification_ttl_hours)
        self.reset_ttl = timedelta(hours=settings.password_reset_ttl_hours)

    def _active_user(self, user_id: str) -> Optional[User]:
        user = self.store.get_user(user_id)
        if user is None or user.is_deleted:
            return None
        return user

    def _session_result(self, pair: TokenPair) -> AuthResult:
        user = pair.user
        return AuthResult(
            user_id=user.id,
            email=user.email,
            display_name=user.display_name,
            user_type=user.user_type,
            access_token=pair.access_token.token,
            access_token_expires_at=pair.access_token.expires_at,
            refresh_token=pair.refresh_secret,
            refresh_token_expires_at=pair.refresh_record.expires_at,
        )

    def _start_session(self, user: User, client_ip: Optional[str]) -> AuthResult:
        issued = self.refresh.issue(user, client_ip)
        access = self.issuer.issue_access_token(user.id, user.email, user.user_type)
        return self._session_result(
            TokenPair(
                user=user,
                access_token=access,
                refresh_secret=issued.secret,
                refresh_record=issued.record,
            )
        )

    async def _deliver(self, event: str, user: User, send, *args) -> None:
        delivered = await asyncio.to_thread(send, *args)
        if not delivered:
            logger.warning(f"{event}_email_failed", user_id=user.id)

    async def _send_verification(self, user: User) -> None:
        secret = self.single_use.issue(
            user.id, TokenKind.EMAIL_VERIFICATION, self.verification_ttl
        )
        await self._deliver(
            "verification",
            user,
            self.email.send_email_verification,
            user.email,
            user.display_name,
            secret,
        )

    async def register(
        self,
        email: str,
        password: str,
        display_name: str,
        user_type: str | UserType = UserType.ATTENDEE,
        *,
        client_ip: Optional[str] = None,
    ) -> RegistrationResult:
        normalized = validate_email(email)
        validate_password(password)
        name = validate_display_name(display_name)
        kind = validate_user_type(user_type)

        if self.store.get_user_by_email(normalized) is not None:
            logger.info("registration_duplicate", email_hash=email_fingerprint(normalized))
            raise AuthError(AuthErrorKind.DUPLICATE_EMAIL)

        now = self.clock.now()
        user = User.new(
            normalize_unicode(email.strip()),
            name,
            self.hasher.hash(password),
            user_type=kind,
            email_normalized=normalized,
            actor_id=self.system_actor_id,
            now=now,
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same address
            logger.info(
                "registration_duplicate",
                email_hash=email_fingerprint(normalized),
                constraint=exc.constraint,
            )
            raise AuthError(AuthErrorKind.DUPLICATE_EMAIL) from exc

        logger.info(
            "user_registered",
            user_id=user.id,
            user_type=user.user_type.value,
            client_ip=client_ip,
        )
        await self._send_verification(user)
        return RegistrationResult(
            user_id=user.id,
            email=user.email,
            display_name=user.display_name,
            user_type=user.user_type,
            email_verified=user.email_verified,
            created_at=user.created_at,
        )

    async def login(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> AuthResult:
        now = self.clock.now()
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            self.hasher.dummy_verify(password)
            logger.info(
                "login_failed",
                reason="unknown_email",
                email_hash=email_fingerprint(normalized),
                client_ip=client_ip,
            )
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)

        if user.is_locked(now):
            logger.info(
                "login_rejected_locked",
                user_id=user.id,
                locked_until=user.lockout_end.isoformat(),
            )
            raise AuthError(AuthErrorKind.ACCOUNT_LOCKED, until=user.lockout_end)

        if not self.hasher.verify(password, user.password_hash):
            outcome = self.store.record_failed_login(
                user.id,
                threshold=self.settings.max_failed_login_attempts,
                lockout_until=now + self.lockout_window,
                now=now,
            )
            if outcome.locked_now:
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    locked_until=outcome.lockout_end.isoformat(),
                    client_ip=client_ip,
                )
            else:
                logger.info(
                    "login_failed",
                    reason="bad_password",
                    user_id=user.id,
                    failed_attempts=outcome.failed_login_attempts,
                    client_ip=client_ip,
                )
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)

        if user.failed_login_attempts or user.lockout_end is not None:
            self.store.reset_failed_logins(user.id, now=now)
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_password(
                user.id, self.hasher.hash(password), actor_id=user.id, now=now
            )
            logger.info("password_rehashed", user_id=user.id)

        if not user.email_verified:
            raise AuthError(AuthErrorKind.EMAIL_NOT_VERIFIED)

        result = self._start_session(user, client_ip)
        logger.info("login_succeeded", user_id=user.id, client_ip=client_ip)
        return result

    async def refresh_session(
        self, refresh_token: str, *, client_ip: Optional[str] = None
    ) -> AuthResult:
        return self._session_result(self.refresh.rotate(refresh_token, client_ip))

    async def logout(self, refresh_token: str) -> bool:
        return self.refresh.revoke(refresh_token)

    async def logout_all(self, user_id: str) -> int:
        return self.refresh.revoke_all(user_id, RevocationReason.LOGOUT_ALL)

    async def request_email_verification(self, email: str) -> MessageResult:
        normalized = validate_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is not None and not user.email_verified:
            self.single_use.invalidate_all(user.id, TokenKind.EMAIL_VERIFICATION)
            await self._send_verification(user)
            logger.info("email_verification_requested", user_id=user.id)
        else:
            logger.info(
                "email_verification_request_ignored",
                email_hash=email_fingerprint(normalized),
            )
        return MessageResult(VERIFICATION_SENT_MESSAGE)

    async def verify_email(self, token: str) -> MessageResult:
        secret = require_token(token)
        user_id = self.single_use.consume(secret, TokenKind.EMAIL_VERIFICATION)
        if self._active_user(user_id) is None:
            logger.warning("email_verification_missing_user", user_id=user_id)
            raise AuthError(AuthErrorKind.INVALID_OR_EXPIRED)
        self.store.mark_email_verified(
            user_id, actor_id=self.system_actor_id, now=self.clock.now()
        )
        logger.info("email_verified", user_id=user_id)
        return MessageResult(EMAIL_VERIFIED_MESSAGE)

    async def forgot_password(self, email: str) -> MessageResult:
        normalized = validate_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is not None:
            self.single_use.invalidate_all(user.id, TokenKind.PASSWORD_RESET)
            secret = self.single_use.issue(
                user.id, TokenKind.PASSWORD_RESET, self.reset_ttl
            )
            await self._deliver(
                "password_reset",
                user,
                self.email.send_password_reset,
                user.email,
                user.display_name,
                secret,
            )
            logger.info("password_reset_requested", user_id=user.id)
        else:
            logger.info(
                "password_reset_request_ignored",
                email_hash=email_fingerprint(normalized),
            )
        return MessageResult(RESET_SENT_MESSAGE)

    async def reset_password(self, token: str, new_password: str) -> MessageResult:
        validate_password(new_password, field="new_password")
        secret = require_token(token)
        user_id = self.single_use.consume(secret, TokenKind.PASSWORD_RESET)
        user = self._active_user(user_id)
        if user is None:
            logger.warning("password_reset_missing_user", user_id=user_id)
            raise AuthError(AuthErrorKind.INVALID_OR_EXPIRED)

        now = self.clock.now()
        self.store.update_password(
            user.id,
            self.hasher.hash(new_password),
            actor_id=self.system_actor_id,
            now=now,
            clear_lockout=True,
        )
        self.single_use.invalidate_all(user.id, TokenKind.PASSWORD_RESET)
        revoked = self.refresh.revoke_all(user.id, RevocationReason.PASSWORD_RESET)
        logger.info("password_reset_completed", user_id=user.id, revoked_count=revoked)
        await self._deliver(
            "password_changed",
            user,
            self.email.send_password_changed,
            user.email,
            user.display_name,
        )
        return MessageResult(PASSWORD_RESET_MESSAGE)

    def authenticate_access_token(self, token: str) -> AccessClaims:
        return self.issuer.validate_access_token(token)
