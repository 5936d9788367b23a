"""
Reducers: pure folds of a Change into an accumulator.

A reducer is the only index-specific logic the engine runs. The engine
guarantees ``accumulator(n) = reducer.apply(accumulator(n-1), change(n))``
for every applied change, serially and exactly once per index, so a
reducer must be a pure function of its two arguments:
- No hidden state on the reducer instance
- No mutation of the incoming accumulator (return a new value)
- No I/O

Built-in reducers are delete-aware: a delete undoes what the matching
create contributed, using the change's ``before`` snapshot.

Example:
    >>> reducer = CountByFieldReducer(field="author")
    >>> acc = reducer.initial_value()
    >>> acc = reducer.apply(acc, create_change)   # {"A": 1}
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, ClassVar

from ..feed.base import Change, ChangeOperation


class Reducer(ABC):
    """Polymorphic fold step for one index.

    Subclasses set ``kind`` (the name used in declarative specs) and
    implement apply().
    """

    kind: ClassVar[str] = ""

    @abstractmethod
    def apply(self, accumulator: Any, change: Change) -> Any:
        """Fold one change into the accumulator and return the new value."""
        ...

    def initial_value(self) -> Any:
        """Accumulator to start from when a spec doesn't give one."""
        return None

    def options(self) -> dict[str, Any]:
        """Constructor options, for describing the index."""
        return {}

    def describe(self) -> dict[str, Any]:
        return {"reducer": self.kind or type(self).__name__, "options": self.options()}


def _field_value(record: dict[str, Any] | None, field: str, change: Change) -> Any:
    if record is None:
        raise ValueError(f"{change} carries no record for field '{field}'")
    if field not in record:
        raise ValueError(f"{change}: record has no '{field}' field")
    return record[field]


def _number(value: Any, field: str) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Field '{field}' must be numeric, got {value!r}")
    return value


class CountReducer(Reducer):
    """Number of live records."""

    kind = "count"

    def initial_value(self) -> int:
        return 0

    def apply(self, accumulator: int, change: Change) -> int:
        if change.operation == ChangeOperation.CREATE:
            return accumulator + 1
        if change.operation == ChangeOperation.DELETE:
            return accumulator - 1
        return accumulator


class CountByFieldReducer(Reducer):
    """Number of live records per value of one field.

    Values whose count drops to zero are removed from the mapping. An
    update that changes the field moves the record between buckets.
    """

    kind = "count_by_field"

    def __init__(self, field: str) -> None:
        if not field:
            raise ValueError("count_by_field requires a 'field' option")
        self.field = field

    def initial_value(self) -> dict[str, int]:
        return {}

    def options(self) -> dict[str, Any]:
        return {"field": self.field}

    def apply(self, accumulator: dict[Any, int], change: Change) -> dict[Any, int]:
        counts = dict(accumulator)
        if change.operation == ChangeOperation.CREATE:
            self._bump(counts, _field_value(change.after, self.field, change), 1)
        elif change.operation == ChangeOperation.DELETE:
            self._bump(counts, _field_value(change.before, self.field, change), -1)
        else:
            old = _field_value(change.before, self.field, change)
            new = _field_value(change.after, self.field, change)
            if old != new:
                self._bump(counts, old, -1)
                self._bump(counts, new, 1)
        return counts

    @staticmethod
    def _bump(counts: dict[Any, int], value: Any, delta: int) -> None:
        total = counts.get(value, 0) + delta
        if total == 0:
            counts.pop(value, None)
        else:
            counts[value] = total


class SumFieldReducer(Reducer):
    """Sum of a numeric field over live records."""

    kind = "sum_field"

    def __init__(self, field: str) -> None:
        if not field:
            raise ValueError("sum_field requires a 'field' option")
        self.field = field

    def initial_value(self) -> int:
        return 0

    def options(self) -> dict[str, Any]:
        return {"field": self.field}

    def apply(self, accumulator: int | float, change: Change) -> int | float:
        if change.operation == ChangeOperation.CREATE:
            return accumulator + _number(_field_value(change.after, self.field, change), self.field)
        if change.operation == ChangeOperation.DELETE:
            return accumulator - _number(_field_value(change.before, self.field, change), self.field)
        old = _number(_field_value(change.before, self.field, change), self.field)
        new = _number(_field_value(change.after, self.field, change), self.field)
        return accumulator + (new - old)


class LatestByKeyReducer(Reducer):
    """Latest state of every live record, keyed by record key."""

    kind = "latest_by_key"

    def initial_value(self) -> dict[str, Any]:
        return {}

    def apply(self, accumulator: dict[str, Any], change: Change) -> dict[str, Any]:
        if not change.key:
            raise ValueError(f"{change} has no record key")
        records = dict(accumulator)
        if change.operation == ChangeOperation.DELETE:
            records.pop(change.key, None)
        else:
            if change.after is None:
                raise ValueError(f"{change} carries no 'after' record")
            records[change.key] = change.after
        return records


class FunctionReducer(Reducer):
    """Adapts a plain ``fn(accumulator, change)`` callable."""

    kind = "function"

    def __init__(self, fn: Callable[[Any, Change], Any], name: str | None = None) -> None:
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    def options(self) -> dict[str, Any]:
        return {"name": self.name}

    def apply(self, accumulator: Any, change: Change) -> Any:
        return self.fn(accumulator, change)


REDUCERS: dict[str, type[Reducer]] = {
    cls.kind: cls
    for cls in (CountReducer, CountByFieldReducer, SumFieldReducer, LatestByKeyReducer)
}


def build_reducer(spec: str, options: dict[str, Any] | None = None) -> Reducer:
    """Instantiate a reducer from a declarative spec.

    Args:
        spec: A built-in kind ("count", "count_by_field", ...) or an import
            path "package.module:ClassName" naming a Reducer subclass
        options: Keyword arguments for the reducer's constructor

    Returns:
        Reducer instance

    Raises:
        ValueError: If the reducer is unknown or options don't fit
    """
    options = options or {}

    if ":" in spec:
        module_name, _, attr = spec.partition(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ValueError(f"Cannot import reducer module '{module_name}': {e}") from e
        reducer_cls = getattr(module, attr, None)
        if reducer_cls is None:
            raise ValueError(f"Module '{module_name}' has no attribute '{attr}'")
    else:
        reducer_cls = REDUCERS.get(spec)
        if reducer_cls is None:
            raise ValueError(f"Unknown reducer '{spec}'. Built-ins: {sorted(REDUCERS)}")

    if not (isinstance(reducer_cls, type) and issubclass(reducer_cls, Reducer)):
        raise ValueError(f"'{spec}' is not a Reducer subclass")

    try:
        return reducer_cls(**options)
    except TypeError as e:
        raise ValueError(f"Invalid options for reducer '{spec}': {e}") from e
