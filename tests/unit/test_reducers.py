"""
Unit tests for reducers.

Tests cover:
- Built-in reducers for create/update/delete
- Purity (the incoming accumulator is never mutated)
- build_reducer lookup and import paths
"""

import pytest

from crudkit.index_server.feed.base import Change, ChangeOperation
from crudkit.index_server.index.reducers import (
    REDUCERS,
    CountByFieldReducer,
    CountReducer,
    FunctionReducer,
    LatestByKeyReducer,
    Reducer,
    SumFieldReducer,
    build_reducer,
)


def create(seq, record):
    return Change("tweet", ChangeOperation.CREATE, None, record, seq, key=record.get("id"))


def update(seq, before, after):
    return Change("tweet", ChangeOperation.UPDATE, before, after, seq, key=after.get("id"))


def delete(seq, record):
    return Change("tweet", ChangeOperation.DELETE, record, None, seq, key=record.get("id"))


class TopAuthors(Reducer):
    """Custom reducer loaded by import path in tests."""

    kind = "top_authors"

    def __init__(self, top=3):
        self.top = top

    def apply(self, accumulator, change):
        return accumulator


class TestCountReducer:
    def test_counts_creates_and_deletes(self):
        reducer = CountReducer()
        acc = reducer.initial_value()

        acc = reducer.apply(acc, create(1, {"id": "t1"}))
        acc = reducer.apply(acc, create(2, {"id": "t2"}))
        acc = reducer.apply(acc, update(3, {"id": "t1"}, {"id": "t1", "x": 1}))
        acc = reducer.apply(acc, delete(4, {"id": "t2"}))

        assert acc == 1


class TestCountByFieldReducer:
    """Tests for CountByFieldReducer."""

    @pytest.fixture
    def reducer(self):
        return CountByFieldReducer(field="author")

    def test_author_counts(self, reducer):
        """Creates for A, B, A give {A: 2, B: 1}; deleting an A gives {A: 1, B: 1}."""
        acc = reducer.initial_value()
        for seq, author in enumerate(["A", "B", "A"], start=1):
            acc = reducer.apply(acc, create(seq, {"id": f"t{seq}", "author": author}))
        assert acc == {"A": 2, "B": 1}

        acc = reducer.apply(acc, delete(4, {"id": "t1", "author": "A"}))
        assert acc == {"A": 1, "B": 1}

    def test_update_moves_between_buckets(self, reducer):
        acc = {"A": 1}

        acc = reducer.apply(
            acc, update(2, {"id": "t1", "author": "A"}, {"id": "t1", "author": "B"})
        )

        assert acc == {"B": 1}

    def test_does_not_mutate_accumulator(self, reducer):
        acc = {"A": 1}

        result = reducer.apply(acc, create(2, {"id": "t2", "author": "A"}))

        assert acc == {"A": 1}
        assert result == {"A": 2}

    def test_missing_field_raises(self, reducer):
        """A record without the field is malformed."""
        with pytest.raises(ValueError, match="author"):
            reducer.apply({}, create(1, {"id": "t1"}))

    def test_requires_field(self):
        with pytest.raises(ValueError):
            CountByFieldReducer(field="")


class TestSumFieldReducer:
    def test_sums_live_records(self):
        reducer = SumFieldReducer(field="likes")
        acc = reducer.initial_value()

        acc = reducer.apply(acc, create(1, {"id": "t1", "likes": 3}))
        acc = reducer.apply(acc, create(2, {"id": "t2", "likes": 4}))
        acc = reducer.apply(acc, update(3, {"id": "t1", "likes": 3}, {"id": "t1", "likes": 10}))
        acc = reducer.apply(acc, delete(4, {"id": "t2", "likes": 4}))

        assert acc == 10

    @pytest.mark.parametrize("value", ["3", None, True])
    def test_non_numeric_raises(self, value):
        reducer = SumFieldReducer(field="likes")

        with pytest.raises(ValueError, match="numeric"):
            reducer.apply(0, create(1, {"id": "t1", "likes": value}))


class TestLatestByKeyReducer:
    def test_tracks_latest_record_per_key(self):
        reducer = LatestByKeyReducer()
        acc = reducer.initial_value()

        acc = reducer.apply(acc, create(1, {"id": "t1", "text": "hi"}))
        acc = reducer.apply(acc, create(2, {"id": "t2", "text": "yo"}))
        acc = reducer.apply(acc, update(3, {"id": "t1", "text": "hi"}, {"id": "t1", "text": "hey"}))
        acc = reducer.apply(acc, delete(4, {"id": "t2", "text": "yo"}))

        assert acc == {"t1": {"id": "t1", "text": "hey"}}

    def test_requires_key(self):
        reducer = LatestByKeyReducer()
        change = Change("tweet", ChangeOperation.CREATE, None, {"text": "x"}, 1)

        with pytest.raises(ValueError, match="key"):
            reducer.apply({}, change)


class TestFunctionReducer:
    def test_wraps_callable(self):
        def tally(acc, change):
            return acc + [change.sequence]

        reducer = FunctionReducer(tally)

        assert reducer.apply([], create(7, {"id": "t7"})) == [7]
        assert reducer.describe() == {"reducer": "function", "options": {"name": "tally"}}


class TestBuildReducer:
    """Tests for build_reducer."""

    def test_builtins_registered(self):
        assert set(REDUCERS) == {"count", "count_by_field", "sum_field", "latest_by_key"}

    def test_builds_builtin_with_options(self):
        reducer = build_reducer("count_by_field", {"field": "author"})

        assert isinstance(reducer, CountByFieldReducer)
        assert reducer.describe() == {"reducer": "count_by_field", "options": {"field": "author"}}

    def test_builds_from_import_path(self):
        reducer = build_reducer(f"{__name__}:TopAuthors", {"top": 5})

        assert isinstance(reducer, TopAuthors)
        assert reducer.top == 5

    def test_unknown_builtin(self):
        with pytest.raises(ValueError, match="Unknown reducer"):
            build_reducer("median")

    def test_bad_import_path(self):
        with pytest.raises(ValueError, match="Cannot import"):
            build_reducer("no_such_module_xyz:Reducer")
        with pytest.raises(ValueError, match="no attribute"):
            build_reducer(f"{__name__}:Missing")

    def test_not_a_reducer(self):
        with pytest.raises(ValueError, match="not a Reducer"):
            build_reducer(f"{__name__}:create")

    def test_bad_options(self):
        with pytest.raises(ValueError, match="Invalid options"):
            build_reducer("count", {"field": "author"})
