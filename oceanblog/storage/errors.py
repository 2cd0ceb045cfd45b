from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleRecordError(Exception):
    """Raised when a save carries a version older than the stored record."""

    def __init__(self, record_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"record {record_id} is at version {actual}, write expected {expected}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class RecordNotFound(Exception):
    """Raised when a save targets a record that no longer exists."""

    def __init__(self, record_id: str):
        super().__init__(f"record {record_id} not found")
        self.record_id = record_id


__all__ = ["ConstraintViolation", "StaleRecordError", "RecordNotFound"]
