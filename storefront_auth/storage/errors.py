from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when the key-value layer cannot read or persist state."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class IntegrityError(StorageError):
    """Raised when a stored record fails decryption or its integrity check."""


__all__ = ["StorageError", "IntegrityError"]
