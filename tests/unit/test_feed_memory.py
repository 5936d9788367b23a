"""
Unit tests for the in-memory change feed.

Tests cover:
- Connection lifecycle
- Sequence assignment per resource type
- scan_existing synthesis of live records
- open_stream delivery and disconnects
- Testing helpers
"""

import asyncio

import pytest

from crudkit.index_server.feed.base import ChangeFeed, ChangeOperation, FeedDisconnectedError
from crudkit.index_server.feed.memory import InMemoryChangeFeed

CREATE = ChangeOperation.CREATE
UPDATE = ChangeOperation.UPDATE
DELETE = ChangeOperation.DELETE


async def _create(feed, key, author, resource_type="tweet"):
    record = {"id": key, "author": author}
    return await feed.publish(resource_type, CREATE, None, record, key)


class TestInMemoryChangeFeed:
    """Tests for InMemoryChangeFeed."""

    @pytest.fixture
    async def feed(self):
        """Create a connected feed."""
        feed = InMemoryChangeFeed()
        await feed.connect()
        yield feed
        await feed.close()

    @pytest.mark.asyncio
    async def test_connect_disconnect(self):
        """Test connection lifecycle."""
        feed = InMemoryChangeFeed()
        assert not feed.is_connected

        await feed.connect()
        assert feed.is_connected

        await feed.close()
        assert not feed.is_connected

    @pytest.mark.asyncio
    async def test_implements_protocol(self, feed):
        """The in-memory feed satisfies the ChangeFeed protocol."""
        assert isinstance(feed, ChangeFeed)

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self):
        """Publish fails if not connected."""
        feed = InMemoryChangeFeed()

        with pytest.raises(FeedDisconnectedError):
            await _create(feed, "t1", "A")

    @pytest.mark.asyncio
    async def test_publish_requires_key(self, feed):
        """Every change needs a record key."""
        with pytest.raises(ValueError):
            await feed.publish("tweet", CREATE, None, {"author": "A"}, "")

    @pytest.mark.asyncio
    async def test_sequences_start_at_one_per_resource_type(self, feed):
        """Each resource type has its own gapless sequence."""
        t1 = await _create(feed, "t1", "A")
        t2 = await _create(feed, "t2", "B")
        u1 = await _create(feed, "u1", "A", resource_type="user")

        assert (t1.sequence, t2.sequence) == (1, 2)
        assert u1.sequence == 1

    @pytest.mark.asyncio
    async def test_head_sequence(self, feed):
        """head_sequence is 0 for an empty type, else the last sequence."""
        assert await feed.head_sequence("tweet") == 0

        await _create(feed, "t1", "A")
        await _create(feed, "t2", "B")

        assert await feed.head_sequence("tweet") == 2

    @pytest.mark.asyncio
    async def test_scan_existing_synthesizes_creates(self, feed):
        """Scan yields one create per live record, at its last mutation."""
        await _create(feed, "t1", "A")  # 1
        await _create(feed, "t2", "B")  # 2
        await feed.publish(
            "tweet", UPDATE, {"id": "t1", "author": "A"}, {"id": "t1", "author": "C"}, "t1"
        )  # 3
        await _create(feed, "t3", "A")  # 4
        await feed.publish("tweet", DELETE, {"id": "t2", "author": "B"}, None, "t2")  # 5

        scanned = [c async for c in feed.scan_existing("tweet")]

        assert [(c.key, c.sequence) for c in scanned] == [("t1", 3), ("t3", 4)]
        assert all(c.operation == CREATE and c.before is None for c in scanned)
        assert scanned[0].after == {"id": "t1", "author": "C"}

    @pytest.mark.asyncio
    async def test_scan_existing_up_to_sequence(self, feed):
        """Scan stops at up_to_sequence."""
        await _create(feed, "t1", "A")
        await _create(feed, "t2", "B")
        await feed.publish("tweet", DELETE, {"id": "t1", "author": "A"}, None, "t1")

        scanned = [c async for c in feed.scan_existing("tweet", up_to_sequence=2)]

        assert [c.key for c in scanned] == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_open_stream_delivers_after_sequence(self, feed):
        """open_stream starts strictly after after_sequence."""
        for i in range(4):
            await _create(feed, f"t{i}", "A")

        stream = feed.open_stream("tweet", after_sequence=2)
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()

        assert (first.sequence, second.sequence) == (3, 4)

    @pytest.mark.asyncio
    async def test_open_stream_waits_for_new_changes(self, feed):
        """A stream blocks until the next commit."""
        stream = feed.open_stream("tweet")
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.01)
        assert not pending.done()

        await _create(feed, "t1", "A")
        change = await asyncio.wait_for(pending, timeout=1.0)
        await stream.aclose()

        assert change.key == "t1"

    @pytest.mark.asyncio
    async def test_disconnect_streams(self, feed):
        """Injected disconnects surface as FeedDisconnectedError."""
        await _create(feed, "t1", "A")
        stream = feed.open_stream("tweet")
        await stream.__anext__()

        dropped = await feed.disconnect_streams("tweet", failed_reconnects=1)

        assert dropped == 1
        with pytest.raises(FeedDisconnectedError):
            await stream.__anext__()
        with pytest.raises(FeedDisconnectedError):
            await feed.open_stream("tweet").__anext__()
        # the next reconnect succeeds
        reopened = feed.open_stream("tweet")
        assert (await reopened.__anext__()).sequence == 1
        await reopened.aclose()

    @pytest.mark.asyncio
    async def test_redeliver_rewinds_streams(self, feed):
        """redeliver makes open streams repeat already delivered changes."""
        await _create(feed, "t1", "A")
        await _create(feed, "t2", "B")
        stream = feed.open_stream("tweet")
        await stream.__anext__()
        await stream.__anext__()

        await feed.redeliver("tweet", from_sequence=1)

        assert (await stream.__anext__()).sequence == 1
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_inject_gap_burns_sequences(self, feed):
        """inject_gap leaves a hole in the sequence."""
        await _create(feed, "t1", "A")
        feed.inject_gap("tweet", count=2)
        change = await _create(feed, "t2", "B")

        assert change.sequence == 4

    @pytest.mark.asyncio
    async def test_helpers(self, feed):
        """Testing helpers report committed changes and open streams."""
        await _create(feed, "t1", "A")

        assert feed.get_change_count("tweet") == 1
        assert feed.get_changes("user") == []
        assert await feed.wait_for_changes("tweet", 1, timeout=0.1)
        assert not await feed.wait_for_changes("tweet", 2, timeout=0.05)

        stream = feed.open_stream("tweet")
        await stream.__anext__()
        assert feed.open_stream_count == 1
        await stream.aclose()
        assert feed.open_stream_count == 0
