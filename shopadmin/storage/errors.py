from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or FK constraint is violated (duplicate email, unknown user)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreOperationError(Exception):
    """A backing store could not complete an operation (connection lost, pool exhausted)."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} failed")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreOperationError"]
