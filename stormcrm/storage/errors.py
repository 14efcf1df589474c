from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """The backing database could not be reached or a pooled connection timed out."""

    def __init__(self, message: str = "Storage unavailable", *, cause: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class UnrecognizedQueryShape(Exception):
    """A statement object the backend does not know how to execute."""

    def __init__(self, statement: Any):
        super().__init__(f"unrecognized query shape: {type(statement).__name__}")
        self.statement = statement


__all__ = ["ConstraintViolation", "StorageUnavailable", "UnrecognizedQueryShape"]
