"""
crudkit index server test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Engine and HTTP tests over the in-memory change feed
"""
