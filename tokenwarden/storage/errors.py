from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness constraint is violated."""


class RecordNotFound(StoreError):
    """Raised when a mutation targets a record that does not exist."""


__all__ = ["StoreError", "ConstraintViolation", "RecordNotFound"]
