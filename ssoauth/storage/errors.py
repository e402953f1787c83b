from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for key-value store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(StoreError):
    """Raised when a key is absent or has expired."""


class WriteConflict(StoreError):
    """Raised when a conditional write finds the stored value has changed."""


class StoreUnavailable(StoreError):
    """Raised when the store cannot be reached or rejects a command."""


class StoreTimeout(StoreUnavailable):
    """Raised when a store round-trip exceeds its socket timeout."""


__all__ = ["StoreError", "RecordNotFound", "WriteConflict", "StoreUnavailable", "StoreTimeout"]
