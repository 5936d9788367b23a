"""
Storage bridge: the only way changes enter the index server.

The storage layer calls the bridge after a mutation has been validated
and committed. The bridge checks the shape of the mutation, derives the
record key and publishes one Change to the feed, which assigns the
sequence number.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import BridgeError
from .feed.base import Change, ChangeFeed, ChangeOperation

logger = logging.getLogger(__name__)


class StorageBridge:
    """Emits Changes for committed storage mutations.

    Example:
        >>> bridge = StorageBridge(feed)
        >>> await bridge.record_created("tweet", {"id": "t1", "author": "A"})
        >>> await bridge.record_deleted("tweet", {"id": "t1", "author": "A"})
    """

    def __init__(self, feed: ChangeFeed, key_field: str = "id") -> None:
        self.feed = feed
        self.key_field = key_field

    async def emit(
        self,
        resource_type: str,
        operation: ChangeOperation | str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> Change:
        """Publish one change.

        Raises:
            BridgeError: If the mutation is malformed
        """
        if not resource_type:
            raise BridgeError("resource_type is required")
        try:
            operation = ChangeOperation(operation)
        except ValueError:
            raise BridgeError(
                f"Unknown operation {operation!r}", resource_type=resource_type
            ) from None

        if operation == ChangeOperation.CREATE and (after is None or before is not None):
            raise BridgeError("create needs 'after' and no 'before'", resource_type)
        if operation == ChangeOperation.DELETE and (before is None or after is not None):
            raise BridgeError("delete needs 'before' and no 'after'", resource_type)
        if operation == ChangeOperation.UPDATE and (before is None or after is None):
            raise BridgeError("update needs both 'before' and 'after'", resource_type)

        key = self._key(resource_type, operation, before, after)
        change = await self.feed.publish(resource_type, operation, before, after, key)
        logger.debug(
            "Emitted change",
            extra={
                "resource_type": resource_type,
                "operation": operation.value,
                "sequence": change.sequence,
                "key": key,
            },
        )
        return change

    async def record_created(self, resource_type: str, record: dict[str, Any]) -> Change:
        return await self.emit(resource_type, ChangeOperation.CREATE, None, record)

    async def record_updated(
        self, resource_type: str, before: dict[str, Any], after: dict[str, Any]
    ) -> Change:
        return await self.emit(resource_type, ChangeOperation.UPDATE, before, after)

    async def record_deleted(self, resource_type: str, record: dict[str, Any]) -> Change:
        return await self.emit(resource_type, ChangeOperation.DELETE, record, None)

    def _key(
        self,
        resource_type: str,
        operation: ChangeOperation,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> str:
        for record in (after, before):
            if record is None:
                continue
            if not isinstance(record, dict):
                raise BridgeError("records must be mappings", resource_type)
        keys = {
            str(record[self.key_field])
            for record in (before, after)
            if record is not None and record.get(self.key_field) is not None
        }
        if not keys:
            raise BridgeError(
                f"{operation.value} record has no '{self.key_field}'", resource_type
            )
        if len(keys) > 1:
            raise BridgeError(
                f"update changes '{self.key_field}' ({', '.join(sorted(keys))})",
                resource_type,
            )
        return keys.pop()
