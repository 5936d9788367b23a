"""
Unit tests for the pure fold helpers.

Tests cover:
- Delete policy handling
- Reducer failures wrapped with their sequence
- replay: determinism, duplicate discard, gap detection
"""

import pytest

from crudkit.index_server.engine.fold import fold_change, replay
from crudkit.index_server.errors import ReducerError
from crudkit.index_server.feed.base import Change, ChangeOperation, FeedGapError
from crudkit.index_server.index.definition import IndexDefinition
from crudkit.index_server.index.reducers import CountByFieldReducer, CountReducer


def create(seq, author, key=None, resource_type="tweet"):
    key = key or f"t{seq}"
    return Change(
        resource_type, ChangeOperation.CREATE, None, {"id": key, "author": author}, seq, key=key
    )


def delete(seq, author, key):
    return Change(
        "tweet", ChangeOperation.DELETE, {"id": key, "author": author}, None, seq, key=key
    )


@pytest.fixture
def author_counts():
    return IndexDefinition("AuthorCounts", "tweet", CountByFieldReducer("author"), {})


class TestFoldChange:
    def test_folds_delete_by_default(self, author_counts):
        acc = fold_change(author_counts, {"A": 1}, delete(2, "A", "t1"))

        assert acc == {}

    def test_ignore_policy_skips_reducer_for_deletes(self):
        definition = IndexDefinition(
            "Total", "tweet", CountReducer(), 0, delete_policy="ignore"
        )

        assert fold_change(definition, 5, delete(6, "A", "t1")) == 5
        assert fold_change(definition, 5, create(7, "A")) == 6

    def test_reducer_error_carries_sequence(self, author_counts):
        malformed = Change("tweet", ChangeOperation.CREATE, None, {"id": "t5"}, 5, key="t5")

        with pytest.raises(ReducerError) as exc_info:
            fold_change(author_counts, {}, malformed)

        assert exc_info.value.sequence == 5
        assert exc_info.value.name == "AuthorCounts"
        assert isinstance(exc_info.value.cause, ValueError)


class TestReplay:
    """Tests for replay."""

    def test_author_counts_scenario(self, author_counts):
        changes = [create(1, "A"), create(2, "B"), create(3, "A"), delete(4, "A", "t1")]

        assert replay(author_counts, changes[:3]) == ({"A": 2, "B": 1}, 3)
        assert replay(author_counts, changes) == ({"A": 1, "B": 1}, 4)

    def test_deterministic(self, author_counts):
        """Two independent replays of the same log agree."""
        changes = [create(i, "AB"[i % 2]) for i in range(1, 50)]

        assert replay(author_counts, changes) == replay(author_counts, changes)

    def test_redelivered_changes_are_discarded(self, author_counts):
        changes = [create(1, "A"), create(2, "B"), create(1, "A"), create(2, "B"), create(3, "A")]

        assert replay(author_counts, changes) == ({"A": 2, "B": 1}, 3)

    def test_gap_raises(self, author_counts):
        with pytest.raises(FeedGapError) as exc_info:
            replay(author_counts, [create(1, "A"), create(3, "B")])

        assert (exc_info.value.expected, exc_info.value.received) == (2, 3)

    def test_gaps_allowed_for_scans(self, author_counts):
        """Scans skip deleted records, so their sequences are sparse."""
        scan = [create(2, "A"), create(5, "B"), create(9, "A")]

        assert replay(author_counts, scan, check_gaps=False) == ({"A": 2, "B": 1}, 9)

    def test_other_resource_types_ignored(self, author_counts):
        changes = [create(1, "A"), create(1, "Z", resource_type="user"), create(2, "B")]

        assert replay(author_counts, changes) == ({"A": 1, "B": 1}, 2)

    def test_starts_from_fresh_initial_value(self):
        initial = {"A": 10}
        definition = IndexDefinition("Counts", "tweet", CountByFieldReducer("author"), initial)

        replay(definition, [create(1, "A")])

        assert initial == {"A": 10}
