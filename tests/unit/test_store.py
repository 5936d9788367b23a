"""
Unit tests for the materialized state store.

Tests cover:
- Snapshot create/publish/get
- Versioning and staleness flags
- Watches: initial value, updates, coalescing, teardown
- wait_for helper
"""

import asyncio

import pytest

from crudkit.index_server.errors import DuplicateIndexError, IndexNotFoundError
from crudkit.index_server.state.store import IndexSnapshot, IndexStatus, MaterializedStateStore


def _snapshot(value=None, sequence=0, status=IndexStatus.LIVE, **kwargs):
    value = {} if value is None else value
    return IndexSnapshot("AuthorCounts", value, sequence, status, **kwargs)


class TestIndexSnapshot:
    def test_stale_unless_live(self):
        assert not _snapshot(status=IndexStatus.LIVE).stale
        for status in set(IndexStatus) - {IndexStatus.LIVE}:
            assert _snapshot(status=status).stale

    def test_to_dict(self):
        snapshot = _snapshot({"A": 1}, 4, IndexStatus.FAILED, error="boom", failed_sequence=5)

        data = snapshot.to_dict()

        assert data["name"] == "AuthorCounts"
        assert data["value"] == {"A": 1}
        assert data["sequence"] == 4
        assert data["status"] == "failed"
        assert data["stale"] is True
        assert data["error"] == "boom"
        assert data["failedSequence"] == 5
        assert data["asOf"] == snapshot.as_of_ms

    def test_evolve_keeps_other_fields(self):
        snapshot = _snapshot({"A": 1}, 4, gaps=((2, 2),), partial=True)

        evolved = snapshot.evolve(status=IndexStatus.PAUSED)

        assert evolved.status == IndexStatus.PAUSED
        assert evolved.value == {"A": 1}
        assert evolved.gaps == ((2, 2),)
        assert snapshot.status == IndexStatus.LIVE


class TestMaterializedStateStore:
    """Tests for MaterializedStateStore."""

    @pytest.fixture
    def store(self):
        store = MaterializedStateStore(watch_queue_size=4)
        store.create(_snapshot(status=IndexStatus.INITIALIZING))
        return store

    def test_create_and_get(self, store):
        snapshot = store.get("AuthorCounts")

        assert snapshot.status == IndexStatus.INITIALIZING
        assert snapshot.version == 1
        assert "AuthorCounts" in store
        assert store.names() == ["AuthorCounts"]

    def test_duplicate_create_rejected(self, store):
        with pytest.raises(DuplicateIndexError):
            store.create(_snapshot())

    def test_get_unknown(self, store):
        with pytest.raises(IndexNotFoundError):
            store.get("Nope")

    def test_publish_replaces_snapshot_and_bumps_version(self, store):
        before = store.get("AuthorCounts")

        stored = store.publish(_snapshot({"A": 1}, 1))

        assert store.get("AuthorCounts") is stored
        assert stored.version == before.version + 1
        # readers holding the old snapshot are unaffected
        assert before.value == {}
        assert before.sequence == 0

    def test_publish_after_remove_fails(self, store):
        store.remove("AuthorCounts")

        with pytest.raises(IndexNotFoundError):
            store.publish(_snapshot({"A": 1}, 1))

    @pytest.mark.asyncio
    async def test_watch_starts_with_current_snapshot(self, store):
        store.publish(_snapshot({"A": 1}, 1))
        updates = store.watch("AuthorCounts")

        assert await updates.__anext__() == ({"A": 1}, 1)
        await updates.aclose()

    @pytest.mark.asyncio
    async def test_watch_receives_updates_in_order(self, store):
        updates = store.watch("AuthorCounts")
        await updates.__anext__()

        store.publish(_snapshot({"A": 1}, 1))
        store.publish(_snapshot({"A": 1, "B": 1}, 2))

        assert await updates.__anext__() == ({"A": 1}, 1)
        assert await updates.__anext__() == ({"A": 1, "B": 1}, 2)
        await updates.aclose()

    @pytest.mark.asyncio
    async def test_watch_skips_status_only_updates(self, store):
        value = {"A": 1}
        store.publish(_snapshot(value, 1))
        updates = store.watch("AuthorCounts")
        await updates.__anext__()

        store.publish(_snapshot(value, 1, status=IndexStatus.PAUSED))
        store.publish(_snapshot({"A": 2}, 2))

        assert await updates.__anext__() == ({"A": 2}, 2)
        await updates.aclose()

    @pytest.mark.asyncio
    async def test_slow_watcher_coalesces_to_latest(self, store):
        """A lagging watcher loses the oldest updates but ends on the latest."""
        updates = store.watch("AuthorCounts")
        await updates.__anext__()

        for seq in range(1, 11):
            store.publish(_snapshot({"A": seq}, seq))

        received = [await updates.__anext__() for _ in range(4)]
        await updates.aclose()

        assert [seq for _, seq in received] == [7, 8, 9, 10]

    @pytest.mark.asyncio
    async def test_remove_ends_watch(self, store):
        updates = store.watch("AuthorCounts")
        await updates.__anext__()

        async def drain():
            return [update async for update in updates]

        task = asyncio.create_task(drain())
        await asyncio.sleep(0)
        store.remove("AuthorCounts")

        assert await asyncio.wait_for(task, timeout=1.0) == []
        assert store.watcher_count("AuthorCounts") == 0

    @pytest.mark.asyncio
    async def test_close_ends_all_watches(self, store):
        store.create(IndexSnapshot("Total", 0, 0, IndexStatus.LIVE))
        watches = [store.watch("AuthorCounts"), store.watch("Total")]
        for updates in watches:
            await updates.__anext__()

        store.close()

        for updates in watches:
            with pytest.raises(StopAsyncIteration):
                await updates.__anext__()
        assert store.names() == []

    @pytest.mark.asyncio
    async def test_cancelled_watch_unregisters(self, store):
        updates = store.watch("AuthorCounts")
        await updates.__anext__()
        assert store.watcher_count("AuthorCounts") == 1

        await updates.aclose()

        assert store.watcher_count("AuthorCounts") == 0

    @pytest.mark.asyncio
    async def test_watch_unknown_index(self, store):
        with pytest.raises(IndexNotFoundError):
            await store.watch("Nope").__anext__()

    @pytest.mark.asyncio
    async def test_wait_for(self, store):
        async def publish_later():
            await asyncio.sleep(0.02)
            store.publish(_snapshot({"A": 1}, 1))

        task = asyncio.create_task(publish_later())
        snapshot = await store.wait_for("AuthorCounts", lambda s: s.sequence == 1, timeout=1.0)
        await task

        assert snapshot.value == {"A": 1}

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self, store):
        with pytest.raises(asyncio.TimeoutError):
            await store.wait_for("AuthorCounts", lambda s: s.sequence == 99, timeout=0.05)
