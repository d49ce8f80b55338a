"""
Catalog sync test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (in-memory store, stream and snapshot)
"""
