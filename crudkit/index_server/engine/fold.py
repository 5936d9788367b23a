"""
Pure fold helpers shared by the index worker and the offline replay CLI.

fold_change applies one Change to an accumulator under a definition's
delete policy; replay folds a whole ordered log the way a live worker
would, including duplicate discard and gap detection.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ..errors import ReducerError
from ..feed.base import Change, ChangeOperation, FeedGapError
from ..index.definition import DeletePolicy, IndexDefinition


def fold_change(definition: IndexDefinition, accumulator: Any, change: Change) -> Any:
    """Fold one change into an accumulator.

    Deletes bypass the reducer when the definition's delete policy is
    IGNORE; the accumulator is returned unchanged.

    Raises:
        ReducerError: If the reducer raises
    """
    if (
        change.operation == ChangeOperation.DELETE
        and definition.delete_policy == DeletePolicy.IGNORE
    ):
        return accumulator
    try:
        return definition.reducer.apply(accumulator, change)
    except Exception as e:
        raise ReducerError(definition.name, change.sequence, e) from e


def replay(
    definition: IndexDefinition,
    changes: Iterable[Change],
    after_sequence: int = 0,
    check_gaps: bool = True,
) -> tuple[Any, int]:
    """Fold an ordered change log from the definition's initial value.

    Changes for other resource types are ignored. A change at or below
    the last applied sequence is a redelivery and is discarded.

    Args:
        definition: Index to replay
        changes: Changes in delivery order
        after_sequence: Sequence already covered by the initial value
        check_gaps: Require consecutive sequences (off for catch-up scans,
            which skip deleted records)

    Returns:
        (accumulator, last applied sequence)

    Raises:
        ReducerError: If the reducer raises
        FeedGapError: If check_gaps and a sequence is skipped
    """
    accumulator = definition.fresh_accumulator()
    last_sequence = after_sequence

    for change in changes:
        if change.resource_type != definition.source_resource_type:
            continue
        if change.sequence <= last_sequence:
            continue
        if check_gaps and change.sequence != last_sequence + 1:
            raise FeedGapError(change.resource_type, last_sequence + 1, change.sequence)
        accumulator = fold_change(definition, accumulator, change)
        last_sequence = change.sequence

    return accumulator, last_sequence
