"""
In-memory change feed implementation for testing.

This module provides a simple in-memory feed backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on close() or process exit
    - Provides the same ordering guarantees as the Kafka backend
    - Safe for concurrent use from multiple coroutines on one event loop

How to change safely:
    - This is test/dev code, changes don't affect production
    - Keep interface compatible with ChangeFeed protocol
    - Add fault-injection helpers rather than special-casing callers
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from .base import Change, ChangeOperation, FeedDisconnectedError

logger = logging.getLogger(__name__)


@dataclass
class _ResourceLog:
    """Committed changes of one resource type."""

    changes: List[Change] = field(default_factory=list)
    sequences: List[int] = field(default_factory=list)
    next_sequence: int = 1


@dataclass(eq=False)
class _Cursor:
    """Read position of one open stream."""

    resource_type: str
    position: int
    disconnected: bool = False


class InMemoryChangeFeed:
    """In-memory implementation of ChangeFeed for testing.

    Stores every committed change per resource type, so catch-up scans can
    be synthesized as of any sequence by replaying the log.

    Attributes:
        scan_delay: Seconds to sleep per synthesized change in
            scan_existing(), to simulate slow catch-up I/O

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> await feed.connect()
        >>> await feed.publish("tweet", ChangeOperation.CREATE, None,
        ...                    {"id": "t1", "author": "A"}, key="t1")
        >>> async for change in feed.open_stream("tweet"):
        ...     print(change.sequence)
    """

    def __init__(self, scan_delay: float = 0.0) -> None:
        """Initialize in-memory change feed.

        Args:
            scan_delay: Per-record delay for scan_existing() (seconds)
        """
        self.scan_delay = scan_delay
        self._logs: Dict[str, _ResourceLog] = defaultdict(_ResourceLog)
        self._cursors: Set[_Cursor] = set()
        self._connected = False
        self._condition = asyncio.Condition()
        self._failed_reconnects = 0

    @property
    def is_connected(self) -> bool:
        """Whether connected (true between connect() and close())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryChangeFeed connected")

    async def close(self) -> None:
        """Close, wake open streams and clear all data."""
        self._connected = False
        async with self._condition:
            self._condition.notify_all()
        self._logs.clear()
        self._cursors.clear()
        logger.debug("InMemoryChangeFeed closed")

    async def publish(
        self,
        resource_type: str,
        operation: ChangeOperation,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        key: str,
    ) -> Change:
        """Commit a change to the in-memory log.

        Returns:
            The committed Change with its assigned sequence

        Raises:
            FeedDisconnectedError: If not connected
            ValueError: If key is empty
        """
        if not self._connected:
            raise FeedDisconnectedError("Not connected")
        if not key:
            raise ValueError("A record key is required to publish a change")

        async with self._condition:
            log = self._logs[resource_type]
            change = Change(
                resource_type=resource_type,
                operation=operation,
                before=before,
                after=after,
                sequence=log.next_sequence,
                key=key,
                ts_ms=int(time.time() * 1000),
            )
            log.changes.append(change)
            log.sequences.append(change.sequence)
            log.next_sequence += 1
            self._condition.notify_all()

        logger.debug(
            "Change committed to in-memory feed",
            extra={
                "resource_type": resource_type,
                "operation": operation.value,
                "sequence": change.sequence,
                "key": key,
            },
        )
        return change

    async def head_sequence(self, resource_type: str) -> int:
        """Sequence of the latest committed change (0 if none)."""
        log = self._logs.get(resource_type)
        if log is None or not log.sequences:
            return 0
        return log.sequences[-1]

    async def scan_existing(
        self,
        resource_type: str,
        up_to_sequence: Optional[int] = None,
    ) -> AsyncIterator[Change]:
        """Synthesize create changes for the records alive at up_to_sequence.

        Args:
            resource_type: Resource type to scan
            up_to_sequence: Replay the log up to this sequence (default: head)

        Yields:
            One create Change per live record, in ascending sequence order
        """
        if not self._connected:
            raise FeedDisconnectedError("Not connected")

        log = self._logs.get(resource_type)
        history = list(log.changes) if log else []

        alive: Dict[str, Change] = {}
        for change in history:
            if up_to_sequence is not None and change.sequence > up_to_sequence:
                break
            if change.operation == ChangeOperation.DELETE:
                alive.pop(change.key, None)
            else:
                alive[change.key] = change

        for change in sorted(alive.values(), key=lambda c: c.sequence):
            if self.scan_delay:
                await asyncio.sleep(self.scan_delay)
            else:
                await asyncio.sleep(0)
            yield Change(
                resource_type=resource_type,
                operation=ChangeOperation.CREATE,
                before=None,
                after=change.after,
                sequence=change.sequence,
                key=change.key,
                ts_ms=change.ts_ms,
            )

    async def open_stream(
        self,
        resource_type: str,
        after_sequence: int = 0,
    ) -> AsyncIterator[Change]:
        """Yield committed changes with sequence > after_sequence.

        Waits indefinitely for new changes.

        Raises:
            FeedDisconnectedError: If not connected, or a disconnect was
                injected with disconnect_streams()
        """
        if not self._connected:
            raise FeedDisconnectedError("Not connected")
        if self._failed_reconnects > 0:
            self._failed_reconnects -= 1
            raise FeedDisconnectedError("Injected reconnect failure")

        cursor = _Cursor(resource_type=resource_type, position=after_sequence)
        self._cursors.add(cursor)
        log = self._logs[resource_type]

        try:
            while True:
                async with self._condition:
                    await self._condition.wait_for(
                        lambda: cursor.disconnected
                        or not self._connected
                        or (log.sequences and log.sequences[-1] > cursor.position)
                    )
                    if cursor.disconnected or not self._connected:
                        raise FeedDisconnectedError(
                            f"Stream for '{resource_type}' disconnected"
                        )
                    index = bisect.bisect_right(log.sequences, cursor.position)
                    change = log.changes[index]
                    cursor.position = change.sequence

                yield change
        finally:
            self._cursors.discard(cursor)

    # Testing helpers

    async def disconnect_streams(
        self,
        resource_type: Optional[str] = None,
        failed_reconnects: int = 0,
    ) -> int:
        """Drop open streams as if the connection was lost (testing helper).

        Args:
            resource_type: Only drop streams of this type (default: all)
            failed_reconnects: Number of following open_stream() calls that
                fail immediately

        Returns:
            Number of streams dropped
        """
        dropped = 0
        async with self._condition:
            for cursor in self._cursors:
                if resource_type is None or cursor.resource_type == resource_type:
                    cursor.disconnected = True
                    dropped += 1
            self._failed_reconnects = failed_reconnects
            self._condition.notify_all()
        return dropped

    async def redeliver(self, resource_type: str, from_sequence: int) -> None:
        """Rewind open streams so they deliver from_sequence again (testing helper)."""
        async with self._condition:
            for cursor in self._cursors:
                if cursor.resource_type == resource_type:
                    cursor.position = min(cursor.position, from_sequence - 1)
            self._condition.notify_all()

    def inject_gap(self, resource_type: str, count: int = 1) -> None:
        """Burn sequence numbers so the next publish leaves a gap (testing helper)."""
        self._logs[resource_type].next_sequence += count

    def get_changes(self, resource_type: str) -> List[Change]:
        """Get all committed changes for a resource type (testing helper)."""
        log = self._logs.get(resource_type)
        return list(log.changes) if log else []

    def get_change_count(self, resource_type: str) -> int:
        """Get committed change count for a resource type (testing helper)."""
        return len(self.get_changes(resource_type))

    @property
    def open_stream_count(self) -> int:
        """Number of currently open streams (testing helper)."""
        return len(self._cursors)

    async def wait_for_changes(
        self,
        resource_type: str,
        count: int,
        timeout: float = 5.0,
    ) -> bool:
        """Wait for a specific number of committed changes (testing helper).

        Returns:
            True if count reached, False if timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if self.get_change_count(resource_type) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
