"""
In-memory entry store implementation for testing.

This module provides a dictionary-backed EntryStore for:
- Unit tests
- Integration tests of the service layer
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Same ordering and CAS semantics as the SQLite backend
    - replace_category releases the lock between its delete and insert steps

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the EntryStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import replace

from ..errors import PartitionLimitError, UnavailableError
from ..model import NOT_EXISTS, UNORDERED, Category, Entry, EntryIdentity, EntryValue, now_ms
from ..ordering import order_key
from .base import CasResult, check_replacement

logger = logging.getLogger(__name__)


class InMemoryEntryStore:
    """In-memory implementation of EntryStore for testing.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines on one
        event loop.

    Example:
        >>> store = InMemoryEntryStore()
        >>> await store.upsert_unconditional(entry)
        >>> await store.get_all("user-1")
    """

    def __init__(self, max_entries_per_owner: int = 10_000) -> None:
        """Initialize in-memory store.

        Args:
            max_entries_per_owner: Partition bound per owner
        """
        self.max_entries_per_owner = max_entries_per_owner
        self._partitions: dict[str, dict[EntryIdentity, Entry]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._pending_failure: Exception | None = None
        self._latency = 0.0
        self._replace_gate: asyncio.Event | None = None
        self._replace_paused = asyncio.Event()

    async def _enter(self, operation: str) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._pending_failure is not None:
            exc, self._pending_failure = self._pending_failure, None
            logger.debug("Raising injected failure", extra={"operation": operation})
            raise exc

    def _check_limit(self, owner_id: str, adding: int = 1) -> None:
        if len(self._partitions[owner_id]) + adding > self.max_entries_per_owner:
            raise PartitionLimitError(owner_id, self.max_entries_per_owner)

    async def get_all(self, owner_id: str) -> list[Entry]:
        await self._enter("get_all")
        async with self._lock:
            return sorted(self._partitions.get(owner_id, {}).values(), key=order_key)

    async def get_category(self, owner_id: str, category: Category) -> list[Entry]:
        await self._enter("get_category")
        async with self._lock:
            return sorted(
                (e for e in self._partitions.get(owner_id, {}).values() if e.category == category),
                key=order_key,
            )

    async def get_entry(
        self,
        owner_id: str,
        category: Category,
        key: str,
        position: int = UNORDERED,
    ) -> Entry | None:
        await self._enter("get_entry")
        identity = EntryIdentity(owner_id, str(category), position, key)
        async with self._lock:
            return self._partitions.get(owner_id, {}).get(identity)

    async def upsert_unconditional(self, entry: Entry) -> Entry:
        await self._enter("upsert_unconditional")
        async with self._lock:
            partition = self._partitions[entry.owner_id]
            current = partition.get(entry.identity)
            stored = self._stamp(entry, current)
            if current is None:
                self._check_limit(entry.owner_id)
            partition[entry.identity] = stored
            return stored

    async def upsert_conditional(self, entry: Entry, expected_version: int) -> CasResult:
        await self._enter("upsert_conditional")
        async with self._lock:
            partition = self._partitions[entry.owner_id]
            current = partition.get(entry.identity)
            actual = current.version if current else NOT_EXISTS
            if actual != expected_version:
                return CasResult(False, current, current.version if current else None)
            if current is None:
                self._check_limit(entry.owner_id)
            stored = self._stamp(entry, current)
            partition[entry.identity] = stored
            return CasResult(True, stored)

    async def compare_and_swap(
        self,
        identity: EntryIdentity,
        expected_version: int,
        new_value: EntryValue,
    ) -> bool:
        entry = Entry.new(
            identity.owner_id,
            Category.parse(identity.category),
            identity.key,
            new_value,
            position=identity.position,
        )
        result = await self.upsert_conditional(entry, expected_version)
        return result.applied

    async def reposition(
        self,
        owner_id: str,
        category: Category,
        key: str,
        old_position: int,
        new_position: int,
        expected_version: int,
    ) -> CasResult:
        await self._enter("reposition")
        old_identity = EntryIdentity(owner_id, str(category), old_position, key)
        new_identity = EntryIdentity(owner_id, str(category), new_position, key)
        async with self._lock:
            partition = self._partitions[owner_id]
            current = partition.get(old_identity)
            if current is None or current.version != expected_version:
                return CasResult(False, current, current.version if current else None)
            if new_identity in partition:
                return CasResult(False, current, current.version)
            del partition[old_identity]
            moved = replace(
                current,
                position=new_position,
                version=current.version + 1,
                updated_at=now_ms(),
            )
            partition[new_identity] = moved
            return CasResult(True, moved)

    async def replace_category(
        self,
        owner_id: str,
        category: Category,
        new_entries: Sequence[Entry],
    ) -> list[Entry]:
        check_replacement(owner_id, category, new_entries)
        await self._enter("replace_category")

        async with self._lock:
            partition = self._partitions[owner_id]
            doomed = [ident for ident, e in partition.items() if e.category == category]
            if len(partition) - len(doomed) + len(new_entries) > self.max_entries_per_owner:
                raise PartitionLimitError(owner_id, self.max_entries_per_owner)
            for ident in doomed:
                del partition[ident]

        # Readers may run here and observe the category empty.
        if self._replace_gate is not None:
            self._replace_paused.set()
            await self._replace_gate.wait()

        stored = []
        async with self._lock:
            partition = self._partitions[owner_id]
            # Rows from an overlapping replace; the last insert wins.
            for ident in [i for i, e in partition.items() if e.category == category]:
                del partition[ident]
            for entry in new_entries:
                fresh = self._stamp(entry, None)
                partition[entry.identity] = fresh
                stored.append(fresh)

        logger.debug(
            "Replaced category",
            extra={
                "owner_id": owner_id,
                "category": str(category),
                "deleted": len(doomed),
                "inserted": len(stored),
            },
        )
        return stored

    async def delete(self, owner_id: str, category: Category, position: int, key: str) -> bool:
        await self._enter("delete")
        identity = EntryIdentity(owner_id, str(category), position, key)
        async with self._lock:
            return self._partitions.get(owner_id, {}).pop(identity, None) is not None

    async def delete_owner(self, owner_id: str) -> int:
        await self._enter("delete_owner")
        async with self._lock:
            removed = self._partitions.pop(owner_id, {})
            return len(removed)

    async def stats(self, owner_id: str) -> dict[str, int]:
        await self._enter("stats")
        async with self._lock:
            counts: dict[str, int] = defaultdict(int)
            for entry in self._partitions.get(owner_id, {}).values():
                counts[str(entry.category)] += 1
            result = dict(counts)
            result["total"] = sum(counts.values())
            return result

    async def close(self) -> None:
        self._partitions.clear()

    @staticmethod
    def _stamp(entry: Entry, current: Entry | None) -> Entry:
        ts = now_ms()
        if current is None:
            return replace(entry, version=1, created_at=ts, updated_at=ts)
        return replace(
            entry,
            version=current.version + 1,
            created_at=current.created_at,
            updated_at=ts,
        )

    # Testing helpers

    def inject_failure(self, exception: Exception | None = None) -> None:
        """Make the next operation raise (UnavailableError by default)."""
        self._pending_failure = exception or UnavailableError("Injected store failure")

    def set_latency(self, seconds: float) -> None:
        """Delay every operation by `seconds` before it runs."""
        self._latency = seconds

    def hold_replacements(self) -> asyncio.Event:
        """Pause replace_category between its delete and insert steps.

        Returns:
            Event to set when the replacement may continue
        """
        self._replace_gate = asyncio.Event()
        self._replace_paused.clear()
        return self._replace_gate

    async def wait_for_replace_pause(self, timeout: float = 5.0) -> None:
        """Wait until a held replacement has finished its delete step."""
        await asyncio.wait_for(self._replace_paused.wait(), timeout=timeout)

    def release_replacements(self) -> None:
        """Let held and future replacements run straight through."""
        if self._replace_gate is not None:
            self._replace_gate.set()
        self._replace_gate = None

    def entry_count(self, owner_id: str) -> int:
        """Number of stored entries for an owner (testing helper)."""
        return len(self._partitions.get(owner_id, {}))
