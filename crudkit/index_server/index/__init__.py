"""
Index definitions for the crudkit index server.

This module provides:
- Reducer interface and built-in reducers
- IndexDefinition and its policies
- Declarative (YAML) index specs

Invariants:
    - Reducers are pure: apply(accumulator, change) -> new accumulator
    - Index names are unique within a registry
    - Definitions are immutable once built

How to change safely:
    - New built-in reducers must be delete-aware and registered in REDUCERS
    - Keep the spec file layout backward compatible
"""

from .declarative import (
    IndexSpec,
    IndexSpecError,
    build_definitions,
    load_index_specs,
    parse_index_specs,
)
from .definition import BackpressurePolicy, DeletePolicy, IndexDefinition, ResumePolicy
from .reducers import (
    REDUCERS,
    CountByFieldReducer,
    CountReducer,
    FunctionReducer,
    LatestByKeyReducer,
    Reducer,
    SumFieldReducer,
    build_reducer,
)

__all__ = [
    # Definitions
    "IndexDefinition",
    "BackpressurePolicy",
    "DeletePolicy",
    "ResumePolicy",
    # Reducers
    "Reducer",
    "CountReducer",
    "CountByFieldReducer",
    "SumFieldReducer",
    "LatestByKeyReducer",
    "FunctionReducer",
    "REDUCERS",
    "build_reducer",
    # Declarative specs
    "IndexSpec",
    "IndexSpecError",
    "parse_index_specs",
    "load_index_specs",
    "build_definitions",
]
