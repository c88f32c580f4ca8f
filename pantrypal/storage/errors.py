from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for session storage failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """Raised when a backing store cannot be read or written."""


class CookieTooLarge(StoreError):
    """Raised when a cookie would exceed the browser size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"cookie of {size} bytes exceeds the {limit} byte limit",
            {"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


__all__ = ["StoreError", "StoreUnavailable", "CookieTooLarge"]
