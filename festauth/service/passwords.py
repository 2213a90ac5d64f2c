from __future__ import annotations

import secrets
import threading
from typing import Any, Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from festauth.config import Settings
from festauth.logging import get_logger
from festauth.service.errors import AuthError, AuthErrorKind

logger = get_logger(__name__)


class PasswordHasher:
    """Argon2id hashing with cost parameters taken from settings.

    Verification uses the parameters embedded in each stored encoding, so
    hashes created under older costs keep verifying after the costs change;
    ``needs_rehash`` reports them so they can be upgraded on login.
    """

    def __init__(
        self,
        *,
        memory_cost: int = 65536,
        time_cost: int = 3,
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            memory_cost=settings.argon2_memory_cost,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
            hash_len=settings.argon2_hash_len,
            salt_len=settings.argon2_salt_len,
        )

    def hash(self, password: str) -> str:
        if not isinstance(password, str) or not password:
            raise AuthError.validation("password", "password is required")
        try:
            return self._hasher.hash(password)
        except (HashingError, MemoryError) as exc:
            logger.error(
                "password_hash_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise AuthError(AuthErrorKind.HASHING_FAILURE, str(exc)) from exc

    def verify(self, password: Any, encoded_hash: Any) -> bool:
        """Check ``password`` against ``encoded_hash``.

        Every rejection costs one argon2 verification, including empty input
        and undecodable hashes, so the outcome is not visible in timing.
        """
        if (
            not isinstance(password, str)
            or not isinstance(encoded_hash, str)
            or not password
            or not encoded_hash
        ):
            self.dummy_verify(password)
            return False
        try:
            return self._hasher.verify(encoded_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, ValueError):
            logger.warning("password_hash_malformed")
            self.dummy_verify(password)
            return False
        except VerificationError as exc:
            logger.warning("password_verification_failed", error=str(exc))
            self.dummy_verify(password)
            return False

    def needs_rehash(self, encoded_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(encoded_hash)
        except (InvalidHashError, ValueError):
            return True

    def dummy_verify(self, password: Any) -> None:
        """Spend one verification's worth of time for a login with no user behind it."""

        if self._dummy_hash is None:
            with self._dummy_lock:
                if self._dummy_hash is None:
                    self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(32))
        candidate = password if isinstance(password, str) and password else "x"
        try:
            self._hasher.verify(self._dummy_hash, candidate)
        except (VerificationError, ValueError):
            pass
