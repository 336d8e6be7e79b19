"""
Storage engine for prefstore.

This module provides a pluggable entry store supporting:
- Sharded SQLite (durable, one clustered table per shard)
- In-memory (for testing)

The store is the only source of truth. Caches and aggregates are derived
from it and can be dropped at any time.

Invariants:
    - Reads are ordered by (category, position, key)
    - Conditional writes never partially apply
    - Deletes are idempotent

How to change safely:
    - New backends must implement the EntryStore protocol
    - Run tests/unit/test_store_contract.py against the new backend
"""

from .base import CasResult, ConditionalStore, EntryStore, create_entry_store
from .memory import InMemoryEntryStore
from .sqlite import SqliteEntryStore

__all__ = [
    # Protocol and types
    "EntryStore",
    "ConditionalStore",
    "CasResult",
    # Factory
    "create_entry_store",
    # Implementations
    "InMemoryEntryStore",
    "SqliteEntryStore",
]
