"""
Index registry for the crudkit index server.

The registry maps index names to their definitions and workers. It is a
plain object owned by an EngineContext; there is no module-level
instance.

Invariants:
    - Index names are unique; registering a taken name fails with
      DuplicateIndexError and leaves the existing index untouched
    - A definition, its worker and its store entry are created together
      and removed together
    - Re-registering a name starts from a fresh copy of initial_value
    - Registry mutations are serialized; reads never take the lock

How to change safely:
    - Stop the worker before removing its store entry
    - Never let one worker's failure escape into the registry
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from ..config import EngineConfig
from ..errors import DuplicateIndexError, IndexNotFoundError
from ..feed.subscription import ChangeFeedAdapter
from ..index.definition import IndexDefinition, ResumePolicy
from ..index.reducers import Reducer
from ..state.store import IndexSnapshot, MaterializedStateStore
from .worker import IndexWorker

logger = logging.getLogger(__name__)


class IndexRegistry:
    """Registry of materialized indexes.

    Example:
        >>> registry = IndexRegistry(adapter, store, EngineConfig())
        >>> await registry.register("AuthorCounts", "tweet", CountByFieldReducer("author"), {})
        >>> registry.get("AuthorCounts").value
        {'A': 2, 'B': 1}
        >>> await registry.shutdown()
    """

    def __init__(
        self,
        adapter: ChangeFeedAdapter,
        store: MaterializedStateStore,
        config: EngineConfig | None = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.config = config or EngineConfig()
        self._workers: dict[str, IndexWorker] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        name: str,
        source_resource_type: str,
        reducer: Reducer,
        initial_value: Any,
        **options: Any,
    ) -> IndexSnapshot:
        """Register an index and start its worker.

        Args:
            name: Unique index name
            source_resource_type: Resource type to follow
            reducer: Fold implementation
            initial_value: Starting accumulator
            **options: backpressure_policy, queue_size, delete_policy,
                resume_policy

        Returns:
            The initial snapshot

        Raises:
            DuplicateIndexError: If the name is taken
            ValueError: If the definition is invalid
        """
        options.setdefault("backpressure_policy", self.config.default_backpressure)
        definition = IndexDefinition(
            name=name,
            source_resource_type=source_resource_type,
            reducer=reducer,
            initial_value=initial_value,
            **options,
        )
        return await self.register_definition(definition)

    async def register_definition(self, definition: IndexDefinition) -> IndexSnapshot:
        """Register a prebuilt definition and start its worker.

        Raises:
            DuplicateIndexError: If the name is taken
        """
        async with self._lock:
            if definition.name in self._workers:
                raise DuplicateIndexError(definition.name)

            worker = IndexWorker(definition, self.adapter, self.store, self.config)
            self.store.create(worker.initial_snapshot())
            self._workers[definition.name] = worker
            worker.start()

        logger.info(
            "Registered index",
            extra={
                "index": definition.name,
                "resource_type": definition.source_resource_type,
                "reducer": definition.reducer.kind,
                "backpressure_policy": definition.backpressure_policy.value,
            },
        )
        return self.store.get(definition.name)

    async def unregister(self, name: str) -> None:
        """Stop an index's worker and drop its state and watchers.

        Raises:
            IndexNotFoundError: If no such index
        """
        async with self._lock:
            worker = self._workers.pop(name, None)
            if worker is None:
                raise IndexNotFoundError(name)
            await worker.stop()
            self.store.remove(name)
        logger.info("Unregistered index", extra={"index": name})

    async def pause(self, name: str) -> IndexSnapshot:
        """Pause a live index.

        Raises:
            IndexNotFoundError: If no such index
            InvalidStateError: If the index is not live
        """
        return await self.worker(name).pause()

    async def resume(
        self, name: str, policy: ResumePolicy | str = ResumePolicy.RETRY
    ) -> IndexSnapshot:
        """Resume a paused or failed index.

        Raises:
            IndexNotFoundError: If no such index
            InvalidStateError: If the index is neither paused nor failed
        """
        return await self.worker(name).resume(policy)

    def get(self, name: str) -> IndexSnapshot:
        return self.store.get(name)

    def watch(self, name: str) -> AsyncIterator[tuple[Any, int]]:
        return self.store.watch(name)

    def definition(self, name: str) -> IndexDefinition:
        return self.worker(name).definition

    def worker(self, name: str) -> IndexWorker:
        try:
            return self._workers[name]
        except KeyError:
            raise IndexNotFoundError(name) from None

    def names(self) -> list[str]:
        return sorted(self._workers)

    def snapshots(self) -> list[IndexSnapshot]:
        return [self.store.get(name) for name in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._workers

    def __len__(self) -> int:
        return len(self._workers)

    async def shutdown(self) -> None:
        """Stop every worker and drop all indexes."""
        async with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
            await asyncio.gather(*(worker.stop() for worker in workers))
            for worker in workers:
                self.store.remove(worker.name)
        logger.info("Index registry shut down", extra={"indexes": len(workers)})
