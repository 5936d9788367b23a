"""
Materialized index state.

The store holds one immutable snapshot per index, written only by that
index's worker, read lock-free by the API and pushed to watchers.
"""

from .store import IndexSnapshot, IndexStatus, MaterializedStateStore

__all__ = [
    "IndexSnapshot",
    "IndexStatus",
    "MaterializedStateStore",
]
