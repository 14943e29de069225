"""
Exception taxonomy for Compono.

Every error raised by the engine derives from ComponoError so callers can
catch the whole family at a service boundary while still distinguishing
the recoverable kinds:

- ModelError: a model or deployment failed validation (never retried)
- NotFoundError: a referenced record does not exist
- DriverError: a domain driver operation failed
- LockError / LockTimeoutError: collection lock contention
- LoopTimeoutError: a polling loop ran out of attempts or time
- InvalidStateError: an operation is not allowed in the record's state
- InvariantError: internal invariant violation, must fail loudly
"""

from __future__ import annotations

from typing import Any


class ComponoError(Exception):
    """Base exception for Compono errors."""

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage in a transaction record."""
        return {"type": type(self).__name__, "message": self.message}


class ModelError(ComponoError):
    """Raised when a model or deployment is invalid."""

    def __init__(self, message: str, *, attribute: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.attribute = attribute

    def __str__(self) -> str:
        if self.attribute:
            return f"{self.message} (attribute={self.attribute})"
        return self.message


class ExpressionError(ModelError):
    """Raised when a {{expression}} placeholder cannot be evaluated."""


class NotFoundError(ComponoError):
    """Raised when a referenced record does not exist."""

    def __init__(self, kind: str, key: Any):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class DriverError(ComponoError):
    """Raised when a domain driver operation fails."""

    def __init__(self, message: str, *, driver: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.driver = driver

    def __str__(self) -> str:
        if self.driver:
            return f"[{self.driver}] {self.message}"
        return self.message


class StoreError(ComponoError):
    """Raised on store level failures (duplicate keys, bad queries)."""


class LockError(StoreError):
    """Raised when a record lock is held by another token."""


class LoopTimeoutError(ComponoError):
    """Raised when a polling loop exhausts its retries or its deadline."""


class LockTimeoutError(LoopTimeoutError):
    """Raised when a collection lock could not be acquired in time."""


class InvalidStateError(ComponoError):
    """Raised when an operation is not allowed in the current state."""


class InvariantError(ComponoError):
    """Raised on internal invariant violations."""
