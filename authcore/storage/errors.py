from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """A backing store failed or did not answer before its deadline.

    Callers must treat the operation as failed; it may be retried.
    """

    retryable = True

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} failed: {cause!r}" if cause else f"{operation} failed")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
