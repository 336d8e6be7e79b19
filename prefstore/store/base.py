"""
Base protocol and types for the entry storage engine.

This module defines the EntryStore protocol that all storage backends must
implement, the narrower ConditionalStore compare-and-swap primitive, and the
CasResult returned by every conditional operation.

Invariants:
    - Reads return entries ordered by (category, position, key)
    - Conditional operations either apply fully or not at all
    - Deleting an absent entry is a no-op, never an error
    - replace_category is two steps (delete, then insert); readers may see
      the category empty or partially filled in between
    - Backend failures surface as UnavailableError

How to change safely:
    - Protocol changes require updating every implementation
    - Run the shared store tests against each backend
    - Keep the ordering identical to ordering.order_key
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, NamedTuple, Protocol, runtime_checkable

from ..model import UNORDERED, Category, Entry, EntryIdentity, EntryValue

if TYPE_CHECKING:
    from ..config import StorageConfig


class CasResult(NamedTuple):
    """Outcome of a conditional storage operation.

    Attributes:
        applied: Whether the write happened
        entry: Stored entry after the write, or the current entry on rejection
        current_version: Version found in the store when rejected (None if absent)
    """

    applied: bool
    entry: Entry | None
    current_version: int | None = None


@runtime_checkable
class ConditionalStore(Protocol):
    """Minimal compare-and-swap primitive over versioned values.

    Any backing store that can atomically compare a version and write can
    implement this: an in-memory map behind a lock, a transactional SQL
    table, or a distributed CAS-capable store.
    """

    @abstractmethod
    async def compare_and_swap(
        self,
        identity: EntryIdentity,
        expected_version: int,
        new_value: EntryValue,
    ) -> bool:
        """Write new_value only if the stored version equals expected_version.

        NOT_EXISTS as expected_version means "create only if absent".

        Returns:
            True if applied, False on version mismatch
        """
        ...


@runtime_checkable
class EntryStore(ConditionalStore, Protocol):
    """Protocol for partition-local CRUD over entries.

    Durability contract:
        - A write is visible to the same caller's reads once it returns

    Example:
        >>> store = InMemoryEntryStore()
        >>> entry = Entry.new("u1", Category.toggleable(), "dark_mode",
        ...                   EntryValue.of_bool(True))
        >>> stored = await store.upsert_unconditional(entry)
        >>> stored.version
        1
    """

    @abstractmethod
    async def get_all(self, owner_id: str) -> list[Entry]:
        """Every entry of the owner, ordered by (category, position, key)."""
        ...

    @abstractmethod
    async def get_category(self, owner_id: str, category: Category) -> list[Entry]:
        """Entries of one category, ordered by (position, key)."""
        ...

    @abstractmethod
    async def get_entry(
        self,
        owner_id: str,
        category: Category,
        key: str,
        position: int = UNORDERED,
    ) -> Entry | None:
        """Point read by identity."""
        ...

    @abstractmethod
    async def upsert_unconditional(self, entry: Entry) -> Entry:
        """Insert (version 1) or overwrite (version + 1).

        Raises:
            PartitionLimitError: If inserting would overflow the partition
        """
        ...

    @abstractmethod
    async def upsert_conditional(self, entry: Entry, expected_version: int) -> CasResult:
        """Atomic compare-and-set on the entry's version.

        Raises:
            PartitionLimitError: If inserting would overflow the partition
        """
        ...

    @abstractmethod
    async def reposition(
        self,
        owner_id: str,
        category: Category,
        key: str,
        old_position: int,
        new_position: int,
        expected_version: int,
    ) -> CasResult:
        """Conditionally move a sortable entry to a new position."""
        ...

    @abstractmethod
    async def replace_category(
        self,
        owner_id: str,
        category: Category,
        new_entries: Sequence[Entry],
    ) -> list[Entry]:
        """Delete every entry in the category, then insert new_entries.

        The insert step clears the category again before writing, so
        overlapping replaces leave the last writer's list and nothing else.

        Returns:
            The inserted entries as stored
        """
        ...

    @abstractmethod
    async def delete(self, owner_id: str, category: Category, position: int, key: str) -> bool:
        """Delete one entry. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def delete_owner(self, owner_id: str) -> int:
        """Drop the owner's whole partition. Returns the number of entries removed."""
        ...

    @abstractmethod
    async def stats(self, owner_id: str) -> dict[str, int]:
        """Entry counts per category plus a "total" key."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...


def check_replacement(owner_id: str, category: Category, new_entries: Sequence[Entry]) -> None:
    """Validate a batch passed to replace_category.

    Raises:
        ValueError: If an entry belongs elsewhere or an identity repeats
    """
    seen: set[tuple[int, str]] = set()
    for entry in new_entries:
        if entry.owner_id != owner_id or entry.category != category:
            raise ValueError(
                f"Entry {entry.key!r} does not belong to {owner_id}/{category}"
            )
        slot = (entry.position, entry.key)
        if slot in seen:
            raise ValueError(f"Duplicate entry {entry.key!r} at position {entry.position}")
        seen.add(slot)


def create_entry_store(config: StorageConfig) -> EntryStore:
    """Factory function to create an entry store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryEntryStore
    from .sqlite import SqliteEntryStore

    if config.backend == StoreBackend.MEMORY:
        return InMemoryEntryStore(max_entries_per_owner=config.max_entries_per_owner)
    elif config.backend == StoreBackend.SQLITE:
        return SqliteEntryStore(
            data_dir=config.data_dir,
            num_shards=config.num_shards,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            max_entries_per_owner=config.max_entries_per_owner,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")
