"""
Error types for the crudkit index server.

This module defines the exceptions raised by the registry and the index
engine:
- IndexServerError: Base exception
- DuplicateIndexError: Registration under an existing name
- IndexNotFoundError: Unknown index name
- InvalidStateError: Operator action not legal in the current state
- ReducerError: A reducer raised while folding a change
- CatchUpTimeoutError: Catch-up phase exceeded its deadline
- QueueOverflowError: Inbound queue full under the drop-and-flag policy
- BridgeError: Malformed mutation handed to the storage bridge

Feed-level errors (disconnects, gaps, serialization) live in feed.base.

Invariants:
    - All errors inherit from IndexServerError
    - Errors carry a stable code for programmatic handling
    - Worker-confined errors never propagate across indexes
"""

from __future__ import annotations

from typing import Any


class IndexServerError(Exception):
    """Base exception for all index server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "INDEX_SERVER_ERROR"
        self.details = details or {}


class DuplicateIndexError(IndexServerError):
    """An index with this name is already registered."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Index '{name}' is already registered",
            code="DUPLICATE_INDEX",
            details={"index": name},
        )
        self.name = name


class IndexNotFoundError(IndexServerError):
    """No index is registered under this name."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Index '{name}' not found",
            code="INDEX_NOT_FOUND",
            details={"index": name},
        )
        self.name = name


class InvalidStateError(IndexServerError):
    """Requested transition is not legal from the index's current state."""

    def __init__(self, name: str, state: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} index '{name}' while it is {state}",
            code="INVALID_STATE",
            details={"index": name, "state": state, "action": action},
        )
        self.name = name
        self.state = state
        self.action = action


class ReducerError(IndexServerError):
    """The reducer raised while folding a change.

    The index is frozen at its last good snapshot; other indexes keep
    running.
    """

    def __init__(self, name: str, sequence: int, cause: BaseException) -> None:
        super().__init__(
            f"Reducer for index '{name}' failed at sequence {sequence}: "
            f"{type(cause).__name__}: {cause}",
            code="REDUCER_ERROR",
            details={"index": name, "sequence": sequence},
        )
        self.name = name
        self.sequence = sequence
        self.cause = cause


class CatchUpTimeoutError(IndexServerError):
    """Catch-up did not finish within the configured timeout."""

    def __init__(self, name: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Catch-up for index '{name}' exceeded {timeout_seconds}s",
            code="CATCH_UP_TIMEOUT",
            details={"index": name, "timeout_seconds": timeout_seconds},
        )
        self.name = name
        self.timeout_seconds = timeout_seconds


class QueueOverflowError(IndexServerError):
    """A change was dropped because the index's inbound queue was full."""

    def __init__(self, name: str, sequence: int, maxsize: int) -> None:
        super().__init__(
            f"Inbound queue for index '{name}' full ({maxsize}); "
            f"dropped sequence {sequence}",
            code="QUEUE_OVERFLOW",
            details={"index": name, "sequence": sequence, "maxsize": maxsize},
        )
        self.name = name
        self.sequence = sequence
        self.maxsize = maxsize


class BridgeError(IndexServerError):
    """The storage bridge received a malformed mutation."""

    def __init__(self, message: str, resource_type: str | None = None) -> None:
        super().__init__(
            message,
            code="BRIDGE_ERROR",
            details={"resource_type": resource_type},
        )
        self.resource_type = resource_type
