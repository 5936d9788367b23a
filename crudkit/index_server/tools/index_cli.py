"""
Index CLI tool for the crudkit index server.

This tool works on declarative index specs without a running server:
- check: Validate a spec file and build every reducer
- replay: Fold a recorded change log (JSON lines) offline

Usage:
    crudkit-index check indexes.yaml
    crudkit-index replay indexes.yaml changes.jsonl
    crudkit-index replay indexes.yaml changes.jsonl --index AuthorCounts

Invariants:
    - Invalid specs and failed replays cause a non-zero exit code
    - replay output is deterministic (sorted JSON)
    - replay folds exactly like a live worker (duplicates discarded,
      gaps reported)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from ..engine.fold import replay
from ..errors import IndexServerError
from ..feed.base import Change, FeedError, FeedSerializationError
from ..index.declarative import IndexSpecError, build_definitions, load_index_specs
from ..index.definition import IndexDefinition

logger = logging.getLogger(__name__)


class IndexCLI:
    """CLI tool for offline index work.

    Example:
        >>> cli = IndexCLI()
        >>> definitions = cli.check("indexes.yaml")
        >>> cli.replay(definitions, cli.read_changes("changes.jsonl"))
        {'AuthorCounts': {'value': {'A': 2, 'B': 1}, 'sequence': 3}}
    """

    def check(self, spec_path: str) -> list[IndexDefinition]:
        """Validate a spec file.

        Returns:
            The definitions it describes

        Raises:
            IndexSpecError: If the file is invalid
        """
        return build_definitions(load_index_specs(spec_path))

    def read_changes(self, path: str) -> list[Change]:
        """Read a JSON-lines change log.

        Raises:
            IndexSpecError: If a line isn't a valid change
        """
        changes = []
        with Path(path).open(encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    changes.append(Change.from_dict(json.loads(line)))
                except (ValueError, TypeError, FeedSerializationError) as e:
                    raise IndexSpecError(f"{path}:{line_number}: invalid change: {e}") from e
        return changes

    def replay(
        self,
        definitions: list[IndexDefinition],
        changes: list[Change],
    ) -> dict[str, dict[str, Any]]:
        """Fold a change log into every definition.

        Returns:
            {index name: {"value", "sequence"}} or {"error", "sequence"}
            for an index whose replay failed
        """
        results: dict[str, dict[str, Any]] = {}
        for definition in definitions:
            try:
                value, sequence = replay(definition, changes)
            except (IndexServerError, FeedError) as e:
                results[definition.name] = {
                    "error": str(e),
                    "sequence": getattr(e, "sequence", None) or getattr(e, "expected", None),
                }
            else:
                results[definition.name] = {"value": value, "sequence": sequence}
        return results


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the index tool."""
    parser = argparse.ArgumentParser(description="crudkit index tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # check command
    check_parser = subparsers.add_parser("check", help="Validate an index spec file")
    check_parser.add_argument("spec", help="Path to the YAML index spec")

    # replay command
    replay_parser = subparsers.add_parser("replay", help="Fold a change log offline")
    replay_parser.add_argument("spec", help="Path to the YAML index spec")
    replay_parser.add_argument("changes", help="Path to a JSON-lines change log")
    replay_parser.add_argument("--index", help="Only replay this index")

    args = parser.parse_args(argv)
    cli = IndexCLI()

    try:
        definitions = cli.check(args.spec)
    except IndexSpecError as e:
        print(f"Index spec check FAILED: {e}")
        sys.exit(1)

    if args.command == "check":
        print(f"Index spec is valid ({len(definitions)} index(es)):")
        for definition in definitions:
            print(
                f"  - {definition.name}: {definition.reducer.kind} "
                f"over '{definition.source_resource_type}'"
            )
        sys.exit(0)

    elif args.command == "replay":
        if args.index:
            definitions = [d for d in definitions if d.name == args.index]
            if not definitions:
                print(f"Index '{args.index}' not found in {args.spec}", file=sys.stderr)
                sys.exit(1)

        try:
            changes = cli.read_changes(args.changes)
        except (OSError, IndexSpecError) as e:
            print(f"Cannot read change log: {e}", file=sys.stderr)
            sys.exit(1)

        results = cli.replay(definitions, changes)
        print(json.dumps(results, indent=2, sort_keys=True, default=str))
        sys.exit(1 if any("error" in r for r in results.values()) else 0)


if __name__ == "__main__":
    main()
