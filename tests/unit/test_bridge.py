"""
Unit tests for the storage bridge.

Tests cover:
- Emitting create/update/delete changes
- Key derivation
- Rejection of malformed mutations
"""

import pytest

from crudkit.index_server.bridge import StorageBridge
from crudkit.index_server.errors import BridgeError
from crudkit.index_server.feed.base import ChangeOperation
from crudkit.index_server.feed.memory import InMemoryChangeFeed


class TestStorageBridge:
    """Tests for StorageBridge."""

    @pytest.fixture
    async def feed(self):
        feed = InMemoryChangeFeed()
        await feed.connect()
        yield feed
        await feed.close()

    @pytest.fixture
    def bridge(self, feed):
        return StorageBridge(feed)

    @pytest.mark.asyncio
    async def test_emits_changes_with_fresh_sequences(self, feed, bridge):
        created = await bridge.record_created("tweet", {"id": "t1", "author": "A"})
        updated = await bridge.record_updated(
            "tweet", {"id": "t1", "author": "A"}, {"id": "t1", "author": "B"}
        )
        deleted = await bridge.record_deleted("tweet", {"id": "t1", "author": "B"})

        assert [c.sequence for c in (created, updated, deleted)] == [1, 2, 3]
        assert [c.operation for c in (created, updated, deleted)] == [
            ChangeOperation.CREATE,
            ChangeOperation.UPDATE,
            ChangeOperation.DELETE,
        ]
        assert all(c.key == "t1" for c in (created, updated, deleted))
        assert feed.get_change_count("tweet") == 3

    @pytest.mark.asyncio
    async def test_emit_accepts_operation_strings(self, bridge):
        change = await bridge.emit("tweet", "create", None, {"id": 7, "author": "A"})

        assert change.operation == ChangeOperation.CREATE
        assert change.key == "7"

    @pytest.mark.asyncio
    async def test_custom_key_field(self, feed):
        bridge = StorageBridge(feed, key_field="slug")

        change = await bridge.record_created("post", {"slug": "hello", "title": "Hello"})

        assert change.key == "hello"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation, before, after, message",
        [
            ("create", None, None, "create needs"),
            ("create", {"id": "t1"}, {"id": "t1"}, "create needs"),
            ("delete", None, None, "delete needs"),
            ("update", {"id": "t1"}, None, "update needs"),
            ("upsert", None, {"id": "t1"}, "Unknown operation"),
            ("create", None, {"author": "A"}, "no 'id'"),
            ("update", {"id": "t1"}, {"id": "t2"}, "changes 'id'"),
        ],
    )
    async def test_malformed_mutations_rejected(
        self, feed, bridge, operation, before, after, message
    ):
        with pytest.raises(BridgeError, match=message):
            await bridge.emit("tweet", operation, before, after)

        assert feed.get_change_count("tweet") == 0

    @pytest.mark.asyncio
    async def test_resource_type_required(self, bridge):
        with pytest.raises(BridgeError, match="resource_type"):
            await bridge.record_created("", {"id": "t1"})
