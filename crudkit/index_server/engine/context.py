"""
Engine context: explicit owner of the process-wide index machinery.

EngineContext builds the change feed, the feed adapter, the state store,
the registry and the storage bridge, and tears them down in reverse
order. Anything that registers or queries indexes receives the context
(or its registry) by reference.

Invariants:
    - init() must complete before any registration
    - shutdown() stops every worker before closing the feed
    - shutdown() is idempotent
"""

from __future__ import annotations

import logging

from ..bridge import StorageBridge
from ..config import ServerConfig
from ..feed.base import ChangeFeed, create_change_feed
from ..feed.subscription import ChangeFeedAdapter
from ..index.declarative import IndexSpec, build_definitions, load_index_specs
from ..state.store import IndexSnapshot, MaterializedStateStore
from .registry import IndexRegistry

logger = logging.getLogger(__name__)


class EngineContext:
    """Owns the feed, store, registry and bridge of one process.

    Example:
        >>> async with EngineContext(ServerConfig(), feed=InMemoryChangeFeed()) as ctx:
        ...     await ctx.bridge.record_created("tweet", {"id": "t1", "author": "A"})
        ...     await ctx.registry.register("AuthorCounts", "tweet",
        ...                                 CountByFieldReducer("author"), {})
    """

    def __init__(self, config: ServerConfig | None = None, feed: ChangeFeed | None = None) -> None:
        """Initialize the context.

        Args:
            config: Server configuration (default: all defaults)
            feed: Change feed to use instead of the configured backend
        """
        self.config = config or ServerConfig()
        self._feed = feed
        self._adapter: ChangeFeedAdapter | None = None
        self._store: MaterializedStateStore | None = None
        self._registry: IndexRegistry | None = None
        self._bridge: StorageBridge | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def feed(self) -> ChangeFeed:
        if self._feed is None or not self._initialized:
            raise RuntimeError("EngineContext is not initialized")
        return self._feed

    @property
    def adapter(self) -> ChangeFeedAdapter:
        return self._require(self._adapter)

    @property
    def store(self) -> MaterializedStateStore:
        return self._require(self._store)

    @property
    def registry(self) -> IndexRegistry:
        return self._require(self._registry)

    @property
    def bridge(self) -> StorageBridge:
        return self._require(self._bridge)

    def _require(self, component):
        if component is None:
            raise RuntimeError("EngineContext is not initialized")
        return component

    async def init(self) -> None:
        """Connect the feed and build an empty registry.

        Registers the indexes of the configured spec file, if any.
        """
        if self._initialized:
            return

        if self._feed is None:
            self._feed = create_change_feed(self.config.feed)
        await self._feed.connect()

        self._adapter = ChangeFeedAdapter(self._feed, self.config.feed.retry)
        self._store = MaterializedStateStore(self.config.engine.watch_queue_size)
        self._registry = IndexRegistry(self._adapter, self._store, self.config.engine)
        self._bridge = StorageBridge(self._feed)
        self._initialized = True
        logger.info(
            "Engine context initialized",
            extra={"feed": type(self._feed).__name__},
        )

        spec_path = self.config.engine.index_spec_path
        if spec_path:
            await self.register_specs(load_index_specs(spec_path))

    async def register_specs(self, specs: list[IndexSpec]) -> list[IndexSnapshot]:
        """Register declarative index specs.

        Raises:
            IndexSpecError: If a spec can't be turned into a definition
            DuplicateIndexError: If a name is already registered
        """
        definitions = build_definitions(specs, self.config.engine.default_backpressure)
        snapshots = []
        for definition in definitions:
            snapshots.append(await self.registry.register_definition(definition))
        return snapshots

    async def shutdown(self) -> None:
        """Stop all workers, end all watches and close the feed."""
        if not self._initialized:
            return
        self._initialized = False

        if self._registry is not None:
            await self._registry.shutdown()
        if self._store is not None:
            self._store.close()
        if self._feed is not None:
            await self._feed.close()

        self._registry = None
        self._store = None
        self._adapter = None
        self._bridge = None
        logger.info("Engine context shut down")

    async def __aenter__(self) -> EngineContext:
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
