from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for failures reported by the user, subscription and session stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A duplicate email, or a row referencing a user that does not exist.

    ``field`` names the offending column when the store knows it; the HTTP
    layer maps this error to 409.
    """

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["StorageError", "ConstraintViolation"]
