from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for failures raised by the persistence layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write."""


class PersistenceError(StorageError):
    """The backing file or database could not be written."""


__all__ = ["StorageError", "ConstraintViolation", "PersistenceError"]
