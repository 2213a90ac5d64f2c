from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by the persistence layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or FK constraint rejected the write.

    ``constraint`` names the violated rule (``email_unique``, ``token_hash_unique``,
    ``user_fk``) so callers can translate it without parsing messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message, detail)
        self.constraint = constraint


class RecordNotFound(StorageError):
    """An update targeted a row that does not exist."""


__all__ = ["ConstraintViolation", "RecordNotFound", "StorageError"]
