from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by store implementations."""


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule was violated.

    ``detail`` names the offending field (``{"field": "email"}``) so the API
    layer can answer 409 without leaking the underlying SQL.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["StorageError", "ConstraintViolation"]
