"""
prefstore test suite.

This package contains:
- unit/: Unit tests (in-memory backends, SQLite in temporary directories)
- integration/: Service-level tests across store, cache and ledger
"""
