"""
Change feed abstraction for the crudkit index server.

This module provides a pluggable change feed interface supporting:
- Kafka/Redpanda (recommended for production)
- In-memory (for testing and local development)

and the ChangeFeedAdapter that turns a backend into resilient, ordered,
gap-checked subscriptions for the index engine.

Invariants:
    - publish() returns only after the change is durably committed
    - Changes are totally ordered per resource type by sequence
    - Subscribers receive changes at-least-once, in sequence order
    - Gaps are reported, never skipped

How to change safely:
    - New backends must implement the ChangeFeed protocol
    - Test with disconnect/redelivery injection (see InMemoryChangeFeed)
"""

from .base import (
    Change,
    ChangeFeed,
    ChangeOperation,
    FeedDisconnectedError,
    FeedError,
    FeedGapError,
    FeedSerializationError,
    create_change_feed,
)
from .kafka import KafkaChangeFeed
from .memory import InMemoryChangeFeed
from .subscription import ChangeFeedAdapter, ChangeSubscription

__all__ = [
    # Protocol and types
    "ChangeFeed",
    "Change",
    "ChangeOperation",
    "FeedError",
    "FeedDisconnectedError",
    "FeedGapError",
    "FeedSerializationError",
    # Factory
    "create_change_feed",
    # Adapter
    "ChangeFeedAdapter",
    "ChangeSubscription",
    # Implementations
    "KafkaChangeFeed",
    "InMemoryChangeFeed",
]
