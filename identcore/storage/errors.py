from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """A durable or ephemeral store could not be reached or timed out.

    Carries the backend name so callers can log which dependency failed.
    """

    def __init__(self, backend: str, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{backend} unavailable during {operation}")
        self.backend = backend
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable"]
