"""
Index definitions.

An IndexDefinition binds a unique name to the resource type it follows,
the reducer that folds its changes, the accumulator it starts from, and
the policies that govern overflow, deletes and failure handling.

Invariants:
    - Definitions are immutable once built
    - Every worker starts from a deep copy of initial_value, so no state
      survives unregistration or is shared between indexes
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .reducers import Reducer


class BackpressurePolicy(Enum):
    """What to do when an index's inbound queue is full."""

    STALL = "stall"  # stop pulling from the feed until there is room
    DROP_AND_FLAG = "drop_and_flag"  # drop, record the gap, mark partial


class DeletePolicy(Enum):
    """Whether delete changes reach the reducer."""

    FOLD = "fold"
    IGNORE = "ignore"  # sequence advances, reducer not called


class ResumePolicy(Enum):
    """How a failed index continues.

    MANUAL means it stays failed until an operator resumes it. RETRY
    re-attempts the failed step; SKIP steps over the poisoned change (or
    feed gap) and flags the index partial.
    """

    MANUAL = "manual"
    RETRY = "retry"
    SKIP = "skip"


def _coerce(enum_cls: type[Enum], value: Any, field_name: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {field_name} {value!r}. Must be one of: {valid}")


@dataclass(frozen=True, eq=False)
class IndexDefinition:
    """Definition of one materialized index.

    Attributes:
        name: Unique index name
        source_resource_type: Resource type whose changes are folded
        reducer: Fold implementation
        initial_value: Accumulator before any change is applied
        backpressure_policy: Behaviour when the inbound queue is full
        queue_size: Inbound queue bound (None: engine default)
        delete_policy: Whether deletes are passed to the reducer
        resume_policy: Automatic handling of failures

    Example:
        >>> IndexDefinition(
        ...     name="AuthorCounts",
        ...     source_resource_type="tweet",
        ...     reducer=CountByFieldReducer(field="author"),
        ...     initial_value={},
        ... )
    """

    name: str
    source_resource_type: str
    reducer: Reducer
    initial_value: Any
    backpressure_policy: BackpressurePolicy = BackpressurePolicy.STALL
    queue_size: int | None = None
    delete_policy: DeletePolicy = DeletePolicy.FOLD
    resume_policy: ResumePolicy = ResumePolicy.MANUAL

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Index name must be non-empty")
        if not self.source_resource_type:
            raise ValueError(f"Index '{self.name}': source_resource_type is required")
        if not isinstance(self.reducer, Reducer):
            raise ValueError(f"Index '{self.name}': reducer must be a Reducer instance")
        if self.queue_size is not None and self.queue_size <= 0:
            raise ValueError(f"Index '{self.name}': queue_size must be positive")

        # frozen dataclass: coerce string policies in place
        object.__setattr__(
            self,
            "backpressure_policy",
            _coerce(BackpressurePolicy, self.backpressure_policy, "backpressure_policy"),
        )
        object.__setattr__(
            self, "delete_policy", _coerce(DeletePolicy, self.delete_policy, "delete_policy")
        )
        object.__setattr__(
            self, "resume_policy", _coerce(ResumePolicy, self.resume_policy, "resume_policy")
        )

    def fresh_accumulator(self) -> Any:
        """A private copy of the initial value."""
        return copy.deepcopy(self.initial_value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_resource_type": self.source_resource_type,
            **self.reducer.describe(),
            "initial_value": self.initial_value,
            "backpressure_policy": self.backpressure_policy.value,
            "queue_size": self.queue_size,
            "delete_policy": self.delete_policy.value,
            "resume_policy": self.resume_policy.value,
        }
