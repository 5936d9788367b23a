"""
Change feed adapter: resilient, gap-checked subscriptions.

The adapter sits between a raw ChangeFeed backend and the index engine.
It turns a backend stream that may drop its connection into a
subscription that:
- Reconnects with exponential backoff after FeedDisconnectedError
- Resumes after the last sequence the consumer acknowledged
- Reports a skipped sequence as FeedGapError instead of delivering past it

Delivery is at-least-once: after a reconnect, changes delivered but not yet
acknowledged are delivered again. Consumers discard sequences they have
already applied.

Invariants:
    - Delivered sequences are non-decreasing between reconnects
    - A sequence is never skipped silently
    - Transient disconnects are absorbed; only exhausted retries surface
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional

from ..config import FeedRetryConfig
from .base import Change, ChangeFeed, FeedDisconnectedError, FeedGapError

logger = logging.getLogger(__name__)


class ChangeSubscription:
    """One consumer's subscription to a resource type's changes.

    Attributes:
        resource_type: Resource type being followed
        reconnects: Number of reconnects performed so far

    Example:
        >>> subscription = adapter.subscribe("tweet", after_sequence=3)
        >>> async for change in subscription:
        ...     apply(change)
        ...     subscription.ack(change.sequence)
    """

    def __init__(
        self,
        feed: ChangeFeed,
        resource_type: str,
        after_sequence: int,
        retry: FeedRetryConfig,
    ) -> None:
        self.resource_type = resource_type
        self.reconnects = 0
        self._feed = feed
        self._retry = retry
        self._last_acked = after_sequence
        self._last_delivered = after_sequence
        self._closed = False

    @property
    def last_acked(self) -> int:
        """Highest sequence acknowledged by the consumer."""
        return self._last_acked

    def ack(self, sequence: int) -> None:
        """Acknowledge that every change up to sequence has been applied."""
        if sequence > self._last_acked:
            self._last_acked = sequence

    def close(self) -> None:
        """Stop after the current stream; no further reconnects."""
        self._closed = True

    def __aiter__(self) -> AsyncIterator[Change]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Change]:
        attempt = 0
        while not self._closed:
            self._last_delivered = self._last_acked
            try:
                async with aclosing(
                    self._feed.open_stream(self.resource_type, self._last_acked)
                ) as stream:
                    async for change in stream:
                        attempt = 0
                        expected = self._last_delivered + 1
                        if change.sequence > expected:
                            raise FeedGapError(self.resource_type, expected, change.sequence)
                        if change.sequence == expected:
                            self._last_delivered = change.sequence
                        yield change
                        if self._closed:
                            return
            except FeedDisconnectedError as e:
                if self._closed:
                    return
                if attempt >= self._retry.max_retries:
                    logger.error(
                        "Change feed reconnect attempts exhausted",
                        extra={
                            "resource_type": self.resource_type,
                            "attempts": attempt,
                            "last_acked": self._last_acked,
                        },
                    )
                    raise
                delay = self._retry.delay_seconds(attempt)
                attempt += 1
                self.reconnects += 1
                logger.warning(
                    f"Change feed disconnected, reconnecting in {delay:.2f}s: {e}",
                    extra={
                        "resource_type": self.resource_type,
                        "attempt": attempt,
                        "resume_after": self._last_acked,
                    },
                )
                await asyncio.sleep(delay)


class ChangeFeedAdapter:
    """Subscription point for the index engine.

    Wraps a ChangeFeed backend with reconnect/backoff, gap detection and
    at-least-once resumption. Scans and head lookups pass through.

    Example:
        >>> adapter = ChangeFeedAdapter(feed, FeedRetryConfig())
        >>> head = await adapter.head_sequence("tweet")
        >>> async for change in adapter.scan_existing("tweet", head):
        ...     fold(change)
        >>> subscription = adapter.subscribe("tweet", after_sequence=head)
    """

    def __init__(self, feed: ChangeFeed, retry: Optional[FeedRetryConfig] = None) -> None:
        self.feed = feed
        self.retry = retry or FeedRetryConfig()

    def subscribe(self, resource_type: str, after_sequence: int = 0) -> ChangeSubscription:
        """Follow a resource type's changes with sequence > after_sequence."""
        return ChangeSubscription(self.feed, resource_type, after_sequence, self.retry)

    def scan_existing(
        self,
        resource_type: str,
        up_to_sequence: Optional[int] = None,
    ) -> AsyncIterator[Change]:
        """Synthesized creates for the records alive at up_to_sequence.

        Not retried here; a disconnected scan has to be folded again from
        the start by the caller.
        """
        return self.feed.scan_existing(resource_type, up_to_sequence)

    async def head_sequence(self, resource_type: str) -> int:
        """Latest committed sequence, retrying transient disconnects."""
        attempt = 0
        while True:
            try:
                return await self.feed.head_sequence(resource_type)
            except FeedDisconnectedError:
                if attempt >= self.retry.max_retries:
                    raise
                await asyncio.sleep(self.retry.delay_seconds(attempt))
                attempt += 1
