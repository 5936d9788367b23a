"""
Materialized state store.

Holds the latest snapshot of every registered index and fans updates out
to watchers. Each entry has exactly one writer (its IndexWorker) and any
number of readers.

Snapshots are immutable: publishing replaces the entry's reference in one
assignment, so a reader either sees the previous fold or the next one,
never a partially applied change. Reads take no lock and never wait on
the writer.

Watchers get a bounded queue each. A watcher that falls behind loses its
oldest pending updates (it always ends on the latest), and the writer
never blocks on it.

Invariants:
    - version increases by one on every publish of an entry
    - get() returns whole snapshots only
    - remove() ends every watch on the entry
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import DuplicateIndexError, IndexNotFoundError

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class IndexStatus(Enum):
    """Lifecycle state of an index."""

    INITIALIZING = "initializing"
    CATCHING_UP = "catching_up"
    LIVE = "live"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class IndexSnapshot:
    """Point-in-time state of one index.

    Attributes:
        index_name: Index the snapshot belongs to
        value: Accumulator after the last applied change
        sequence: Last applied sequence number
        status: Lifecycle state
        partial: Some changes were dropped or skipped (see gaps)
        gaps: Inclusive sequence ranges that were not folded
        error: Description of the failure, if any
        failed_sequence: Sequence at which the index failed, if known
        as_of_ms: When the snapshot was published (Unix ms)
        version: Publish counter for this index
    """

    index_name: str
    value: Any
    sequence: int
    status: IndexStatus
    partial: bool = False
    gaps: tuple[tuple[int, int], ...] = ()
    error: str | None = None
    failed_sequence: int | None = None
    as_of_ms: int = field(default_factory=_now_ms)
    version: int = 0

    @property
    def stale(self) -> bool:
        """Whether the value may lag the feed (anything but live)."""
        return self.status != IndexStatus.LIVE

    def evolve(self, **changes: Any) -> IndexSnapshot:
        """Copy with changes and a fresh timestamp."""
        return dataclasses.replace(self, as_of_ms=_now_ms(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.index_name,
            "value": self.value,
            "sequence": self.sequence,
            "status": self.status.value,
            "asOf": self.as_of_ms,
            "stale": self.stale,
            "partial": self.partial,
            "gaps": [list(g) for g in self.gaps],
            "error": self.error,
            "failedSequence": self.failed_sequence,
        }


_CLOSED = object()


class MaterializedStateStore:
    """Latest snapshot per index, with push-based watches.

    Example:
        >>> store = MaterializedStateStore()
        >>> store.create(IndexSnapshot("AuthorCounts", {}, 0, IndexStatus.INITIALIZING))
        >>> store.get("AuthorCounts").sequence
        0
        >>> async for value, sequence in store.watch("AuthorCounts"):
        ...     print(sequence, value)
    """

    def __init__(self, watch_queue_size: int = 64) -> None:
        self.watch_queue_size = watch_queue_size
        self._snapshots: dict[str, IndexSnapshot] = {}
        self._watchers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def create(self, snapshot: IndexSnapshot) -> None:
        """Add an entry.

        Raises:
            DuplicateIndexError: If the entry exists
        """
        if snapshot.index_name in self._snapshots:
            raise DuplicateIndexError(snapshot.index_name)
        self._snapshots[snapshot.index_name] = dataclasses.replace(snapshot, version=1)

    def publish(self, snapshot: IndexSnapshot) -> IndexSnapshot:
        """Replace an entry's snapshot and notify its watchers.

        Returns:
            The stored snapshot (with its version assigned)

        Raises:
            IndexNotFoundError: If the entry was removed
        """
        current = self._snapshots.get(snapshot.index_name)
        if current is None:
            raise IndexNotFoundError(snapshot.index_name)

        stored = dataclasses.replace(snapshot, version=current.version + 1)
        self._snapshots[snapshot.index_name] = stored

        for queue in self._watchers.get(snapshot.index_name, ()):
            self._offer(queue, stored)
        return stored

    def get(self, name: str) -> IndexSnapshot:
        """Current snapshot of an index.

        Raises:
            IndexNotFoundError: If no such entry
        """
        try:
            return self._snapshots[name]
        except KeyError:
            raise IndexNotFoundError(name) from None

    def names(self) -> list[str]:
        return sorted(self._snapshots)

    def snapshots(self) -> list[IndexSnapshot]:
        return [self._snapshots[name] for name in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._snapshots

    def remove(self, name: str) -> None:
        """Drop an entry and end its watches."""
        self._snapshots.pop(name, None)
        for queue in self._watchers.pop(name, set()):
            self._offer(queue, _CLOSED)

    def close(self) -> None:
        """Drop all entries and end all watches."""
        for name in list(self._snapshots):
            self.remove(name)

    def watcher_count(self, name: str) -> int:
        return len(self._watchers.get(name, ()))

    async def watch(self, name: str) -> AsyncIterator[tuple[Any, int]]:
        """Stream (value, sequence) updates of an index.

        Starts with the current snapshot and runs until the index is
        removed or the caller stops iterating. Status-only changes (same
        value and sequence) are not repeated.

        Raises:
            IndexNotFoundError: If no such entry
        """
        snapshot = self.get(name)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.watch_queue_size)
        self._watchers[name].add(queue)
        try:
            last_sequence, last_value = snapshot.sequence, snapshot.value
            yield last_value, last_sequence

            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                if item.sequence == last_sequence and (
                    item.value is last_value or item.value == last_value
                ):
                    continue
                last_sequence, last_value = item.sequence, item.value
                yield last_value, last_sequence
        finally:
            watchers = self._watchers.get(name)
            if watchers is not None:
                watchers.discard(queue)
                if not watchers:
                    self._watchers.pop(name, None)

    @staticmethod
    def _offer(queue: asyncio.Queue, item: Any) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(item)

    # Testing helpers

    async def wait_for(
        self,
        name: str,
        predicate: Callable[[IndexSnapshot], bool],
        timeout: float = 5.0,
    ) -> IndexSnapshot:
        """Wait until an index's snapshot satisfies predicate (testing helper).

        Raises:
            asyncio.TimeoutError: If the predicate isn't met in time
        """
        deadline = time.monotonic() + timeout
        while True:
            snapshot = self._snapshots.get(name)
            if snapshot is not None and predicate(snapshot):
                return snapshot
            if time.monotonic() >= deadline:
                raise asyncio.TimeoutError(
                    f"Index '{name}' did not reach the expected state within {timeout}s "
                    f"(last: {snapshot.to_dict() if snapshot else None})"
                )
            await asyncio.sleep(0.01)
