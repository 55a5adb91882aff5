from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class StoreErrorCategory(str, Enum):
    """Closed set of failure kinds a principal store may report."""

    UNAVAILABLE = "unavailable"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    ABORTED = "aborted"
    INTERNAL = "internal"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_ARGUMENT = "invalid_argument"
    PERMISSION_DENIED = "permission_denied"


RETRYABLE_CATEGORIES = frozenset(
    {
        StoreErrorCategory.UNAVAILABLE,
        StoreErrorCategory.DEADLINE_EXCEEDED,
        StoreErrorCategory.RESOURCE_EXHAUSTED,
        StoreErrorCategory.ABORTED,
        StoreErrorCategory.INTERNAL,
    }
)


class StoreError(Exception):
    """Raised by store backends; ``category`` decouples callers from the engine."""

    def __init__(
        self,
        message: str,
        category: StoreErrorCategory = StoreErrorCategory.INTERNAL,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = StoreErrorCategory(category)
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, StoreErrorCategory.CONFLICT, detail)


def is_retryable(error: BaseException) -> bool:
    """Return True when a failed store write may succeed if attempted again."""
    if not isinstance(error, StoreError):
        return False
    return error.category in RETRYABLE_CATEGORIES


__all__ = [
    "StoreErrorCategory",
    "RETRYABLE_CATEGORIES",
    "StoreError",
    "ConstraintViolation",
    "is_retryable",
]
