"""
Index worker for the crudkit index server.

One IndexWorker runs per registered index. It folds that index's change
stream into an accumulator and publishes a snapshot after every change:

    initializing -> catching_up -> live
         |              |           | \
         +----------> failed <------+  paused (operator)

- initializing: capture the feed head as the catch-up target
- catching_up: fold scan_existing(up to target) from a fresh copy of the
  initial value, under a timeout; a disconnected scan restarts from
  scratch with the feed retry backoff; publish (value, target, live) once
- live: a producer task pulls from the subscription into a bounded queue;
  the worker folds one change at a time, publishes, then acknowledges

Invariants:
    - Changes of one index are folded strictly one at a time, in order
    - Fold and publish happen with no await in between, so cancellation
      only ever lands between two changes
    - A sequence at or below the last applied one is discarded
    - A skipped sequence is never folded past silently: it is either a
      recorded gap (partial) or a FeedGapError (failed)
    - A failed index keeps serving its last good value and sequence

How to change safely:
    - Keep every await outside the fold/publish section
    - New failure kinds must set failed_sequence or document why not
    - Test resume paths for both catch-up and live failures
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from ..config import EngineConfig
from ..errors import CatchUpTimeoutError, InvalidStateError, QueueOverflowError, ReducerError
from ..feed.base import Change, FeedDisconnectedError, FeedGapError
from ..feed.subscription import ChangeFeedAdapter, ChangeSubscription
from ..index.definition import BackpressurePolicy, IndexDefinition, ResumePolicy
from ..state.store import IndexSnapshot, IndexStatus, MaterializedStateStore
from .fold import fold_change

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _StreamFailure:
    """Queue item carrying an exception raised by the producer."""

    error: BaseException


_END_OF_STREAM = object()


class IndexWorker:
    """Catches up, then tails the feed for one index.

    Example:
        >>> worker = IndexWorker(definition, adapter, store, EngineConfig())
        >>> store.create(worker.initial_snapshot())
        >>> worker.start()
        >>> await store.wait_for(definition.name, lambda s: s.status == IndexStatus.LIVE)
        >>> await worker.stop()
    """

    def __init__(
        self,
        definition: IndexDefinition,
        adapter: ChangeFeedAdapter,
        store: MaterializedStateStore,
        config: EngineConfig | None = None,
    ) -> None:
        self.definition = definition
        self.adapter = adapter
        self.store = store
        self.config = config or EngineConfig()
        self.queue_size = definition.queue_size or self.config.queue_size

        self._accumulator: Any = definition.fresh_accumulator()
        self._sequence = 0
        self._status = IndexStatus.INITIALIZING
        self._caught_up = False
        self._gaps: list[tuple[int, int]] = []
        self._error: BaseException | None = None
        self._failed_sequence: int | None = None
        self._auto_resumes = 0
        self._task: asyncio.Task | None = None

        self._applied_count = 0
        self._duplicate_count = 0
        self._dropped_count = 0
        self._last_overflow: QueueOverflowError | None = None

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def status(self) -> IndexStatus:
        return self._status

    @property
    def sequence(self) -> int:
        """Last applied sequence."""
        return self._sequence

    @property
    def error(self) -> BaseException | None:
        """Exception that failed the index, if it is failed."""
        return self._error

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def initial_snapshot(self) -> IndexSnapshot:
        return IndexSnapshot(
            index_name=self.name,
            value=self._accumulator,
            sequence=0,
            status=IndexStatus.INITIALIZING,
        )

    # Lifecycle

    def start(self) -> None:
        """Start the worker task (catch-up, then live tail)."""
        if self.running:
            logger.warning("Index worker already running", extra={"index": self.name})
            return
        self._task = asyncio.create_task(self._run(), name=f"index-worker:{self.name}")

    async def stop(self) -> None:
        """Cancel the worker and wait for it to stop between two changes."""
        await self._cancel_task()
        logger.info(
            "Index worker stopped",
            extra={"index": self.name, "sequence": self._sequence},
        )

    async def pause(self) -> IndexSnapshot:
        """Stop tailing; reads keep the current value (flagged stale).

        Raises:
            InvalidStateError: If the index is not live
        """
        if self._status != IndexStatus.LIVE:
            raise InvalidStateError(self.name, self._status.value, "pause")
        await self._cancel_task()
        if self._status == IndexStatus.LIVE:
            self._status = IndexStatus.PAUSED
            self._publish()
        logger.info("Index paused", extra={"index": self.name, "sequence": self._sequence})
        return self.store.get(self.name)

    async def resume(self, policy: ResumePolicy | str = ResumePolicy.RETRY) -> IndexSnapshot:
        """Continue a paused or failed index.

        A paused index tails again after its last applied sequence. A
        failed index is re-attempted (RETRY) or continues past the
        offending change or gap, which is recorded and flags the index
        partial (SKIP). Failures during catch-up restart catch-up from a
        fresh accumulator.

        Raises:
            InvalidStateError: If the index is neither paused nor failed
            ValueError: If policy is not retry or skip
        """
        policy = ResumePolicy(policy) if not isinstance(policy, ResumePolicy) else policy
        if policy == ResumePolicy.MANUAL:
            raise ValueError("Resume policy must be 'retry' or 'skip'")
        if self._status not in (IndexStatus.PAUSED, IndexStatus.FAILED):
            raise InvalidStateError(self.name, self._status.value, "resume")

        # a failed worker may be sleeping before an automatic resume
        await self._cancel_task()

        if self._status == IndexStatus.FAILED:
            self._prepare_resume(policy)
            self._auto_resumes = 0
        else:
            self._status = IndexStatus.LIVE
        self._publish()
        logger.info(
            "Index resumed",
            extra={"index": self.name, "policy": policy.value, "sequence": self._sequence},
        )
        self.start()
        return self.store.get(self.name)

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # Main loop

    async def _run(self) -> None:
        while True:
            try:
                if not self._caught_up:
                    await self._catch_up()
                await self._tail()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._fail(e)

            if not self._should_auto_resume():
                return
            delay = self.config.auto_resume_delay_ms / 1000 * (2**self._auto_resumes)
            self._auto_resumes += 1
            logger.info(
                f"Automatically resuming index in {delay:.2f}s",
                extra={
                    "index": self.name,
                    "policy": self.definition.resume_policy.value,
                    "attempt": self._auto_resumes,
                },
            )
            await asyncio.sleep(delay)
            self._prepare_resume(self.definition.resume_policy)
            self._publish()

    def _should_auto_resume(self) -> bool:
        if self.definition.resume_policy == ResumePolicy.MANUAL:
            return False
        if self._auto_resumes >= self.config.max_auto_resumes:
            logger.error(
                "Automatic resumes exhausted; index stays failed",
                extra={"index": self.name, "attempts": self._auto_resumes},
            )
            return False
        return True

    async def _catch_up(self) -> None:
        resource_type = self.definition.source_resource_type
        target = await self.adapter.head_sequence(resource_type)

        self._status = IndexStatus.CATCHING_UP
        self._publish()
        logger.info(
            "Catching up index",
            extra={"index": self.name, "resource_type": resource_type, "target": target},
        )

        accumulator = self.definition.fresh_accumulator()
        folded = 0
        retry = self.adapter.retry

        async def fold_scan() -> None:
            nonlocal accumulator, folded
            attempt = 0
            while True:
                # a partly folded scan can't be resumed; start over
                accumulator = self.definition.fresh_accumulator()
                folded = 0
                try:
                    scan = self.adapter.scan_existing(resource_type, target)
                    async with aclosing(scan) as changes:
                        async for change in changes:
                            if self._in_gap(change.sequence):
                                continue
                            accumulator = fold_change(self.definition, accumulator, change)
                            folded += 1
                    return
                except FeedDisconnectedError as e:
                    if attempt >= retry.max_retries:
                        raise
                    delay = retry.delay_seconds(attempt)
                    attempt += 1
                    logger.warning(
                        f"Catch-up scan disconnected, restarting in {delay:.2f}s: {e}",
                        extra={"index": self.name, "attempt": attempt, "target": target},
                    )
                    await asyncio.sleep(delay)

        timeout = self.config.catch_up_timeout_seconds
        try:
            await asyncio.wait_for(fold_scan(), timeout)
        except asyncio.TimeoutError:
            raise CatchUpTimeoutError(self.name, timeout) from None

        self._accumulator = accumulator
        self._sequence = max(self._sequence, target)
        self._caught_up = True
        self._status = IndexStatus.LIVE
        self._publish()
        logger.info(
            "Index caught up",
            extra={"index": self.name, "sequence": self._sequence, "records": folded},
        )

    async def _tail(self) -> None:
        self._status = IndexStatus.LIVE
        self._error = None
        self._failed_sequence = None
        self._publish()

        subscription = self.adapter.subscribe(
            self.definition.source_resource_type, after_sequence=self._sequence
        )
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        producer = asyncio.create_task(
            self._produce(subscription, queue), name=f"index-producer:{self.name}"
        )
        try:
            while True:
                item = await queue.get()
                if item is _END_OF_STREAM:
                    logger.info("Change stream ended", extra={"index": self.name})
                    return
                if isinstance(item, _StreamFailure):
                    raise item.error
                self._apply(item)
                subscription.ack(self._sequence)
        finally:
            subscription.close()
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    async def _produce(self, subscription: ChangeSubscription, queue: asyncio.Queue) -> None:
        stall = self.definition.backpressure_policy == BackpressurePolicy.STALL
        # highest sequence handed to the consumer by this producer
        enqueued = self._sequence
        try:
            async with aclosing(subscription.__aiter__()) as changes:
                async for change in changes:
                    if change.sequence <= max(enqueued, self._sequence):
                        self._discard_duplicate(change)
                        continue
                    if stall:
                        await queue.put(change)
                        enqueued = change.sequence
                        continue
                    try:
                        queue.put_nowait(change)
                    except asyncio.QueueFull:
                        self._record_drop(change)
                    else:
                        enqueued = change.sequence
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(_StreamFailure(e))
        else:
            await queue.put(_END_OF_STREAM)

    def _apply(self, change: Change) -> None:
        if change.sequence <= self._sequence:
            self._discard_duplicate(change)
            return

        expected = self._sequence + 1
        if change.sequence > expected and not self._covered(expected, change.sequence - 1):
            raise FeedGapError(change.resource_type, expected, change.sequence)

        # no await from here to publish
        self._accumulator = fold_change(self.definition, self._accumulator, change)
        self._sequence = change.sequence
        self._applied_count += 1
        self._publish()

    def _discard_duplicate(self, change: Change) -> None:
        self._duplicate_count += 1
        logger.debug(
            "Discarded duplicate change",
            extra={"index": self.name, "sequence": change.sequence, "applied": self._sequence},
        )

    def _record_drop(self, change: Change) -> None:
        if self._in_gap(change.sequence):
            return
        overflow = QueueOverflowError(self.name, change.sequence, self.queue_size)
        self._last_overflow = overflow
        self._dropped_count += 1
        self._add_gap(change.sequence, change.sequence)
        self._publish()
        logger.warning(
            overflow.message,
            extra={"index": self.name, "sequence": change.sequence, "dropped": self._dropped_count},
        )

    # Failure handling

    def _fail(self, error: BaseException) -> None:
        self._error = error
        if isinstance(error, ReducerError):
            self._failed_sequence = error.sequence
        elif isinstance(error, FeedGapError):
            self._failed_sequence = error.expected
        else:
            self._failed_sequence = None
        self._status = IndexStatus.FAILED
        self._publish()
        logger.error(
            f"Index failed: {error}",
            exc_info=not isinstance(error, (ReducerError, FeedGapError, CatchUpTimeoutError)),
            extra={
                "index": self.name,
                "phase": "live" if self._caught_up else "catch_up",
                "sequence": self._sequence,
                "failed_sequence": self._failed_sequence,
            },
        )

    def _prepare_resume(self, policy: ResumePolicy) -> None:
        error = self._error
        if policy == ResumePolicy.SKIP:
            if isinstance(error, ReducerError):
                self._add_gap(error.sequence, error.sequence)
                if self._caught_up:
                    self._sequence = max(self._sequence, error.sequence)
            elif isinstance(error, FeedGapError):
                self._add_gap(error.expected, error.received - 1)
                self._sequence = max(self._sequence, error.received - 1)
            else:
                logger.info(
                    "Nothing to skip; retrying",
                    extra={"index": self.name, "error": type(error).__name__},
                )
            if self._gaps:
                logger.warning(
                    "Skipped changes; index is partial",
                    extra={"index": self.name, "gaps": list(self._gaps)},
                )
        self._error = None
        self._failed_sequence = None
        self._status = IndexStatus.CATCHING_UP if not self._caught_up else IndexStatus.LIVE

    # Gap bookkeeping

    def _add_gap(self, start: int, end: int) -> None:
        if end < start:
            return
        merged: list[tuple[int, int]] = []
        for low, high in sorted([*self._gaps, (start, end)]):
            if merged and low <= merged[-1][1] + 1:
                merged[-1] = (merged[-1][0], max(merged[-1][1], high))
            else:
                merged.append((low, high))
        self._gaps = merged

    def _covered(self, start: int, end: int) -> bool:
        return any(low <= start and end <= high for low, high in self._gaps)

    def _in_gap(self, sequence: int) -> bool:
        return self._covered(sequence, sequence)

    def _publish(self) -> None:
        self.store.publish(
            IndexSnapshot(
                index_name=self.name,
                value=self._accumulator,
                sequence=self._sequence,
                status=self._status,
                partial=bool(self._gaps),
                gaps=tuple(self._gaps),
                error=f"{type(self._error).__name__}: {self._error}" if self._error else None,
                failed_sequence=self._failed_sequence,
            )
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "index": self.name,
            "status": self._status.value,
            "sequence": self._sequence,
            "running": self.running,
            "applied_count": self._applied_count,
            "duplicate_count": self._duplicate_count,
            "dropped_count": self._dropped_count,
            "auto_resumes": self._auto_resumes,
            "last_overflow": self._last_overflow.message if self._last_overflow else None,
        }
