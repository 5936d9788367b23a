"""
crudkit index server - incremental materialized indexes over a change feed.

This package maintains derived, always-fresh aggregate values ("indexes")
over the change stream produced by the crudkit resource/storage layer.
Each registered index folds Changes through its reducer into a single
accumulator, without re-scanning the primary store on every query.

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌────────────────────┐
    │  Resource /  │────▶│ StorageBridge│────▶│ Change Feed        │
    │  Storage     │     │   (emit)     │     │ (memory / Kafka)   │
    └──────────────┘     └──────────────┘     └─────────┬──────────┘
                                                        │
                                   ChangeFeedAdapter (retry, gap checks)
                                                        │
                        ┌───────────────────────────────┼──────────────┐
                        ▼                               ▼              ▼
                  ┌────────────┐                 ┌────────────┐   ┌────────────┐
                  │ IndexWorker│                 │ IndexWorker│   │ IndexWorker│
                  │  (index A) │                 │  (index B) │   │  (index C) │
                  └─────┬──────┘                 └─────┬──────┘   └─────┬──────┘
                        │                              │                │
                        ▼                              ▼                ▼
                  ┌──────────────────────────────────────────────────────────┐
                  │            MaterializedStateStore (snapshots)            │
                  └──────────────────────────────────────────────────────────┘
                                              │
                                              ▼
                                   HTTP API (GET / WATCH)

Invariants:
    - The change feed is the source of truth; indexes are derived views
    - Each index has exactly one worker, and it folds changes serially
    - A change is applied at most once per index (duplicates are discarded)
    - A failing reducer freezes only its own index

How to change safely:
    - Reducers must stay pure; replay determinism depends on it
    - New feed backends must implement the ChangeFeed protocol
    - Verify idempotency with duplicate-delivery tests
"""

from ._version import __version__

__all__ = ["__version__"]
