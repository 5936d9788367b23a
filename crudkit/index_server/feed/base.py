"""
Base protocol and types for the change feed abstraction.

This module defines the ChangeFeed protocol that all backends must
implement, along with the Change record and feed errors.

Invariants:
    - Sequence numbers start at 1 per resource type
    - Sequence numbers are gapless and strictly increasing in commit order
    - A Change is immutable once assigned its sequence
    - scan_existing() yields one synthesized create per live record

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the JSON wire format backward compatible (Kafka topics outlive
      deployments)
"""

from __future__ import annotations

import json
import logging
import time
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    Optional,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import FeedConfig

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for change feed operations."""

    pass


class FeedDisconnectedError(FeedError):
    """Connection to the feed backend was lost (transient)."""

    pass


class FeedGapError(FeedError):
    """The feed skipped one or more sequence numbers.

    Attributes:
        resource_type: Resource type of the stream
        expected: Sequence that should have been delivered next
        received: Sequence that was actually delivered
    """

    def __init__(self, resource_type: str, expected: int, received: int) -> None:
        super().__init__(
            f"Gap in '{resource_type}' change feed: expected sequence {expected}, "
            f"received {received}"
        )
        self.resource_type = resource_type
        self.expected = expected
        self.received = received


class FeedSerializationError(FeedError):
    """Failed to serialize/deserialize a Change."""

    pass


class ChangeOperation(Enum):
    """Kind of mutation recorded by a Change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Change:
    """An immutable record of one mutation to the primary store.

    Attributes:
        resource_type: Resource type the mutated record belongs to
        operation: create, update or delete
        before: Record snapshot before the mutation (None for create)
        after: Record snapshot after the mutation (None for delete)
        sequence: Per-resource-type sequence number assigned at commit
        key: Primary key of the mutated record
        ts_ms: Commit timestamp (Unix ms)

    Example:
        {
            "resource_type": "tweet",
            "operation": "create",
            "before": null,
            "after": {"id": "t1", "author": "A"},
            "sequence": 1,
            "key": "t1",
            "ts_ms": 1730000000000
        }
    """

    resource_type: str
    operation: ChangeOperation
    before: Optional[Dict[str, Any]]
    after: Optional[Dict[str, Any]]
    sequence: int
    key: Optional[str] = None
    ts_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def record(self) -> Optional[Dict[str, Any]]:
        """The record state this change leaves behind (before, for deletes)."""
        return self.before if self.operation == ChangeOperation.DELETE else self.after

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "resource_type": self.resource_type,
            "operation": self.operation.value,
            "before": self.before,
            "after": self.after,
            "sequence": self.sequence,
            "key": self.key,
            "ts_ms": self.ts_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Change:
        """Create from dictionary representation.

        Raises:
            FeedSerializationError: If fields are missing or invalid
        """
        required = ["resource_type", "operation", "sequence"]
        missing = [f for f in required if f not in data]
        if missing:
            raise FeedSerializationError(f"Missing required fields: {missing}")

        try:
            operation = ChangeOperation(data["operation"])
        except ValueError:
            raise FeedSerializationError(f"Unknown operation: {data['operation']!r}")

        sequence = data["sequence"]
        if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence <= 0:
            raise FeedSerializationError(f"Invalid sequence: {sequence!r}")

        return cls(
            resource_type=data["resource_type"],
            operation=operation,
            before=data.get("before"),
            after=data.get("after"),
            sequence=sequence,
            key=data.get("key"),
            ts_ms=data.get("ts_ms", int(time.time() * 1000)),
        )

    def to_bytes(self) -> bytes:
        """Encode as UTF-8 JSON."""
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, value: bytes) -> Change:
        """Decode from UTF-8 JSON.

        Raises:
            FeedSerializationError: If value is not a valid encoded Change
        """
        try:
            data = json.loads(value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FeedSerializationError(f"Failed to parse change as JSON: {e}")
        if not isinstance(data, dict):
            raise FeedSerializationError("Encoded change must be a JSON object")
        return cls.from_dict(data)

    def __str__(self) -> str:
        return f"Change({self.resource_type}#{self.sequence} {self.operation.value} key={self.key})"


@runtime_checkable
class ChangeFeed(Protocol):
    """Protocol for change feed backends.

    Ordering contract:
        - Changes of one resource type are totally ordered by sequence
        - open_stream() yields changes in sequence order

    Delivery contract:
        - open_stream() may redeliver; consumers must discard
          sequences they have already applied
        - A lost connection surfaces as FeedDisconnectedError; the
          caller reopens the stream after its last applied sequence

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> await feed.connect()
        >>> change = await feed.publish("tweet", ChangeOperation.CREATE,
        ...                             None, {"id": "t1"}, key="t1")
        >>> change.sequence
        1
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the feed backend.

        Raises:
            FeedDisconnectedError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the backend connection and release resources."""
        ...

    @abstractmethod
    async def publish(
        self,
        resource_type: str,
        operation: ChangeOperation,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        key: str,
    ) -> Change:
        """Append a mutation and assign it the next sequence number.

        Returns only after the change is durably stored.

        Returns:
            The committed Change
        """
        ...

    @abstractmethod
    async def head_sequence(self, resource_type: str) -> int:
        """Sequence of the latest committed change (0 if none)."""
        ...

    @abstractmethod
    def scan_existing(
        self,
        resource_type: str,
        up_to_sequence: Optional[int] = None,
    ) -> AsyncIterator[Change]:
        """Synthesize a create Change per record alive at up_to_sequence.

        Each synthesized change carries the sequence of the record's last
        mutation; changes are yielded in ascending sequence order.

        Args:
            resource_type: Resource type to scan
            up_to_sequence: Scan the state as of this sequence (default: head)
        """
        ...

    @abstractmethod
    def open_stream(
        self,
        resource_type: str,
        after_sequence: int = 0,
    ) -> AsyncIterator[Change]:
        """Yield committed changes with sequence > after_sequence, forever.

        Raises:
            FeedDisconnectedError: If the connection drops mid-stream
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_change_feed(config: FeedConfig) -> ChangeFeed:
    """Factory function to create a change feed from configuration.

    Args:
        config: Feed configuration

    Returns:
        Appropriate ChangeFeed implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import FeedBackend
    from .kafka import KafkaChangeFeed
    from .memory import InMemoryChangeFeed

    if config.backend == FeedBackend.KAFKA:
        return KafkaChangeFeed(config.kafka)
    elif config.backend == FeedBackend.MEMORY:
        return InMemoryChangeFeed()
    else:
        raise ValueError(f"Unsupported feed backend: {config.backend}")
