"""
Declarative index specs (YAML/JSON).

Indexes can be registered from configuration instead of code. The spec
file is validated with pydantic and turned into IndexDefinitions.

Example spec:
    indexes:
      - name: AuthorCounts
        source_resource_type: tweet
        reducer: count_by_field
        options:
          field: author
        initial_value: {}
        backpressure_policy: stall
        resume_policy: manual

      - name: TweetTotal
        source_resource_type: tweet
        reducer: count

      - name: Scores
        source_resource_type: game
        reducer: myapp.reducers:ScoreBoard   # custom Reducer subclass
        options:
          top: 10

Omitted initial_value falls back to the reducer's own initial value;
omitted backpressure_policy falls back to the engine default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .definition import IndexDefinition
from .reducers import build_reducer


class IndexSpecError(ValueError):
    """An index spec is invalid."""

    pass


class IndexSpec(BaseModel):
    """Declarative registration of one index."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique index name")
    source_resource_type: str = Field(..., min_length=1, description="Resource type to follow")
    reducer: str = Field(..., min_length=1, description="Built-in reducer or module:Class")
    options: dict[str, Any] = Field(default_factory=dict, description="Reducer options")
    initial_value: Any = Field(None, description="Starting accumulator")
    backpressure_policy: Literal["stall", "drop_and_flag"] | None = None
    queue_size: int | None = Field(None, gt=0, description="Inbound queue bound")
    delete_policy: Literal["fold", "ignore"] = "fold"
    resume_policy: Literal["manual", "retry", "skip"] = "manual"

    def to_definition(self, default_backpressure: str = "stall") -> IndexDefinition:
        """Build the IndexDefinition this spec describes.

        Raises:
            IndexSpecError: If the reducer can't be built
        """
        try:
            reducer = build_reducer(self.reducer, self.options)
        except ValueError as e:
            raise IndexSpecError(f"Index '{self.name}': {e}") from e

        if "initial_value" in self.model_fields_set:
            initial_value = self.initial_value
        else:
            initial_value = reducer.initial_value()

        return IndexDefinition(
            name=self.name,
            source_resource_type=self.source_resource_type,
            reducer=reducer,
            initial_value=initial_value,
            backpressure_policy=self.backpressure_policy or default_backpressure,
            queue_size=self.queue_size,
            delete_policy=self.delete_policy,
            resume_policy=self.resume_policy,
        )


class IndexSpecFile(BaseModel):
    """Top-level layout of a spec file."""

    model_config = ConfigDict(extra="forbid")

    indexes: list[IndexSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> IndexSpecFile:
        seen: set[str] = set()
        for spec in self.indexes:
            if spec.name in seen:
                raise ValueError(f"Duplicate index name '{spec.name}'")
            seen.add(spec.name)
        return self


def parse_index_specs(data: Any) -> list[IndexSpec]:
    """Validate already-parsed spec data.

    Raises:
        IndexSpecError: If the data doesn't match the spec layout
    """
    if data is None:
        return []
    try:
        return IndexSpecFile.model_validate(data).indexes
    except ValidationError as e:
        raise IndexSpecError(f"Invalid index spec: {e}") from e


def load_index_specs(path: str | Path) -> list[IndexSpec]:
    """Read and validate a YAML (or JSON) spec file.

    Raises:
        IndexSpecError: If the file can't be parsed or validated
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise IndexSpecError(f"Cannot read index spec file {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise IndexSpecError(f"Invalid YAML in {path}: {e}") from e
    return parse_index_specs(data)


def build_definitions(
    specs: list[IndexSpec],
    default_backpressure: str = "stall",
) -> list[IndexDefinition]:
    """Turn validated specs into definitions."""
    return [spec.to_definition(default_backpressure) for spec in specs]
