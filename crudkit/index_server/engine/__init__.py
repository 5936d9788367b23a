"""
Index engine for the crudkit index server.

This module provides:
- IndexWorker: per-index catch-up and live tail state machine
- IndexRegistry: named indexes and their workers
- EngineContext: explicit owner of feed, store, registry and bridge
- fold_change / replay: pure fold helpers

Invariants:
    - One worker per index; folds within an index are strictly serial
    - A failing index never affects another index
"""

from .context import EngineContext
from .fold import fold_change, replay
from .registry import IndexRegistry
from .worker import IndexWorker

__all__ = [
    "EngineContext",
    "IndexRegistry",
    "IndexWorker",
    "fold_change",
    "replay",
]
