from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheStoreError(Exception):
    """Raised when the key-value store cannot serve a command.

    Connection failures and command timeouts are both reported this way so
    callers can apply a single degradation policy.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.key = key


class JobQueueError(Exception):
    """Raised when the job queue transport rejects or cannot reach a command."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


__all__ = ["ConstraintViolation", "CacheStoreError", "JobQueueError"]
