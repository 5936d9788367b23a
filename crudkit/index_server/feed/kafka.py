"""
Kafka/Redpanda change feed implementation.

This module provides a production-grade Kafka backend for the change feed.
It works with:
- Apache Kafka
- Amazon MSK
- Redpanda
- Any Kafka API-compatible system

Layout:
    Each resource type is stored in its own single-partition topic
    ``{topic_prefix}.{resource_type}``. A change's sequence number is its
    offset + 1, so sequences are gapless as long as the topic is neither
    compacted nor written transactionally. Compaction shows up as a
    FeedGapError at the adapter, never as silently skipped changes.

Invariants:
    - Producer uses acks=all for strongest durability
    - Idempotent producer prevents duplicate writes on retry
    - Consumers are group-less and seek explicitly; the index engine owns
      its position (last applied sequence), not the broker

How to change safely:
    - Test with actual Kafka/Redpanda cluster before deploying
    - Never enable log compaction on change topics
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import TopicPartition

from ..config import KafkaConfig
from .base import (
    Change,
    ChangeOperation,
    FeedDisconnectedError,
    FeedError,
    FeedSerializationError,
)

logger = logging.getLogger(__name__)

PARTITION = 0


def _decode_record(value: bytes, offset: int, timestamp: Optional[int]) -> Change:
    """Build a Change from a topic record; the offset defines the sequence."""
    try:
        data = json.loads(value.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FeedSerializationError(f"Record at offset {offset} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise FeedSerializationError(f"Record at offset {offset} is not a JSON object")
    data["sequence"] = offset + 1
    if timestamp:
        data["ts_ms"] = timestamp
    return Change.from_dict(data)


class KafkaChangeFeed:
    """Kafka implementation of the ChangeFeed protocol.

    Uses aiokafka for async producer/consumer operations.

    Attributes:
        config: Kafka configuration

    Example:
        >>> feed = KafkaChangeFeed(KafkaConfig(brokers="localhost:9092"))
        >>> await feed.connect()
        >>> change = await feed.publish("tweet", ChangeOperation.CREATE,
        ...                             None, {"id": "t1"}, key="t1")
    """

    def __init__(self, config: KafkaConfig) -> None:
        """Initialize Kafka change feed.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._producer: Optional[AIOKafkaProducer] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._producer is not None

    def topic_for(self, resource_type: str) -> str:
        """Topic holding the changes of a resource type."""
        return f"{self.config.topic_prefix}.{resource_type}"

    def _client_config(self) -> Dict[str, Any]:
        """Connection and security settings shared by producer and consumers."""
        client_config: Dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "request_timeout_ms": self.config.request_timeout_ms,
        }
        if self.config.security_protocol != "PLAINTEXT":
            client_config["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            client_config["sasl_mechanism"] = self.config.sasl_mechanism
            client_config["sasl_plain_username"] = self.config.sasl_username
            client_config["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            client_config["ssl_cafile"] = self.config.ssl_cafile
        return client_config

    def _new_consumer(self) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            **self._client_config(),
        )

    async def connect(self) -> None:
        """Connect to Kafka cluster.

        Creates the producer with durability settings.

        Raises:
            FeedDisconnectedError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                retry_backoff_ms=100,
                **self._client_config(),
            )
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "topic_prefix": self.config.topic_prefix,
                    "acks": self.config.acks,
                },
            )

        except Exception as e:
            self._connected = False
            raise FeedDisconnectedError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Flush pending writes and close the producer."""
        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def publish(
        self,
        resource_type: str,
        operation: ChangeOperation,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        key: str,
    ) -> Change:
        """Append a change to the resource type's topic.

        The payload is written without a sequence; the broker-assigned
        offset defines it.

        Raises:
            FeedDisconnectedError: If not connected or the connection drops
            FeedError: For timeouts and other Kafka errors
        """
        if not self._producer:
            raise FeedDisconnectedError("Not connected to Kafka")

        payload = {
            "resource_type": resource_type,
            "operation": operation.value,
            "before": before,
            "after": after,
            "key": key,
        }
        try:
            metadata = await self._producer.send_and_wait(
                self.topic_for(resource_type),
                value=json.dumps(payload, sort_keys=True).encode("utf-8"),
                key=key.encode("utf-8"),
                partition=PARTITION,
            )
        except KafkaTimeoutError as e:
            raise FeedError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise FeedDisconnectedError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise FeedError(f"Kafka send failed: {e}") from e

        change = Change.from_dict(
            {
                **payload,
                "sequence": metadata.offset + 1,
                "ts_ms": metadata.timestamp or int(time.time() * 1000),
            }
        )
        logger.debug(
            "Change appended to Kafka",
            extra={
                "resource_type": resource_type,
                "sequence": change.sequence,
                "key": key,
            },
        )
        return change

    async def head_sequence(self, resource_type: str) -> int:
        """Sequence of the latest committed change (0 if none)."""
        tp = TopicPartition(self.topic_for(resource_type), PARTITION)
        consumer = self._new_consumer()
        try:
            await consumer.start()
            end_offsets = await consumer.end_offsets([tp])
            # end offset is the offset the next record will get
            return end_offsets.get(tp, 0)
        except KafkaConnectionError as e:
            raise FeedDisconnectedError(f"Failed to read head of {tp.topic}: {e}") from e
        except KafkaError as e:
            raise FeedError(f"Failed to read head of {tp.topic}: {e}") from e
        finally:
            await consumer.stop()

    async def scan_existing(
        self,
        resource_type: str,
        up_to_sequence: Optional[int] = None,
    ) -> AsyncIterator[Change]:
        """Replay the topic and synthesize creates for the live records.

        Yields:
            One create Change per live record, in ascending sequence order
        """
        if up_to_sequence is None:
            up_to_sequence = await self.head_sequence(resource_type)

        alive: Dict[str, Change] = {}
        if up_to_sequence > 0:
            async with aclosing(self.open_stream(resource_type, after_sequence=0)) as stream:
                async for change in stream:
                    if change.operation == ChangeOperation.DELETE:
                        alive.pop(change.key, None)
                    else:
                        alive[change.key] = change
                    if change.sequence >= up_to_sequence:
                        break

        for change in sorted(alive.values(), key=lambda c: c.sequence):
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
        """Consume the resource type's topic from after_sequence onwards.

        Raises:
            FeedDisconnectedError: If the connection fails or drops
            FeedSerializationError: If a record is not a valid change
        """
        tp = TopicPartition(self.topic_for(resource_type), PARTITION)
        consumer = self._new_consumer()
        try:
            await consumer.start()
            consumer.assign([tp])
            # offset N holds sequence N + 1
            consumer.seek(tp, after_sequence)
            logger.info(
                "Opened Kafka change stream",
                extra={"topic": tp.topic, "after_sequence": after_sequence},
            )

            async for msg in consumer:
                yield _decode_record(msg.value, msg.offset, msg.timestamp)

        except KafkaConnectionError as e:
            raise FeedDisconnectedError(f"Kafka stream for {tp.topic} lost: {e}") from e
        except FeedSerializationError:
            raise
        except KafkaError as e:
            raise FeedDisconnectedError(f"Consumer error on {tp.topic}: {e}") from e
        finally:
            await consumer.stop()
