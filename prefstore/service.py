"""
Preference service - the operation contract offered to transport layers.

PreferenceService ties the components together:
- Bulk reads go through the aggregate cache (read-through)
- Every successful write invalidates the owner's cached view before returning
- Versioned writes go through the ConcurrencyController
- Every mutating call accepts an optional idempotency token
- Every store and cache call carries a deadline

Invariants:
    - The store is written first; cache invalidation is best-effort and after
    - Cache failures are logged and never reach the caller
    - Store failures reach the caller unchanged
    - Reads retry UnavailableError with linear backoff; writes never auto-retry

Staleness:
    A reader that fills the cache from a read that raced a write may leave a
    stale view behind. It is replaced at the latest when its TTL expires.

How to change safely:
    - Any new mutating method must go through _write() so it invalidates
      and honours idempotency tokens
    - Keep operation names stable; they are stored with idempotency records
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TypeVar

from .aggregate import AggregateView, build_view
from .cache import AggregateCache, create_cache
from .concurrency import (
    ConcurrencyController,
    IdempotencyLedger,
    WriteOutcome,
    call_with_timeout,
    create_ledger,
)
from .config import OrderingConfig, ServiceConfig, TimeoutConfig
from .errors import NotFoundError, RenumberRequiredError, UnavailableError
from .model import FAVORITES_KEY, UNORDERED, Category, Entry, EntryValue
from .ordering import plan_move, restride, seed_positions
from .store import EntryStore, SqliteEntryStore, create_entry_store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PreferenceService:
    """Core operations over one store, one cache and one idempotency ledger.

    Attributes:
        store: Store of record
        cache: Aggregate cache
        ledger: Idempotency ledger
        controller: Versioned write and idempotency logic
        timeouts: Deadline and retry policy
        ordering: Sortable spacing

    Example:
        >>> service = PreferenceService(InMemoryEntryStore(), InMemoryAggregateCache(),
        ...                             InMemoryIdempotencyLedger())
        >>> outcome = await service.set_toggle("user-1", "dark_mode", True)
        >>> view = await service.get_all("user-1")
        >>> view.toggles["dark_mode"]
        True
    """

    def __init__(
        self,
        store: EntryStore,
        cache: AggregateCache,
        ledger: IdempotencyLedger,
        timeouts: TimeoutConfig | None = None,
        ordering: OrderingConfig | None = None,
        cache_ttl: float | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ledger = ledger
        self.timeouts = timeouts or TimeoutConfig()
        self.ordering = ordering or OrderingConfig()
        self.cache_ttl = cache_ttl
        self.controller = ConcurrencyController(
            store, ledger, max_cas_retries=self.timeouts.max_cas_retries
        )

    @classmethod
    async def from_config(cls, config: ServiceConfig) -> PreferenceService:
        """Build a service and its backends from configuration."""
        store = create_entry_store(config.storage)
        if isinstance(store, SqliteEntryStore):
            await store.initialize()
        return cls(
            store=store,
            cache=create_cache(config.cache),
            ledger=create_ledger(config.idempotency, config.storage.data_dir),
            timeouts=config.timeouts,
            ordering=config.ordering,
            cache_ttl=config.cache.ttl_seconds,
        )

    async def close(self) -> None:
        """Close all backends."""
        await self.cache.close()
        await self.ledger.close()
        await self.store.close()

    # Plumbing

    def _deadline(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self.timeouts.store_timeout

    async def _read(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        timeout: float | None,
    ) -> T:
        """Run a store read, retrying UnavailableError with linear backoff."""
        deadline = self._deadline(timeout)
        attempts = self.timeouts.read_retries + 1
        for attempt in range(attempts):
            try:
                return await call_with_timeout(operation, call(), deadline)
            except UnavailableError as e:
                if attempt + 1 >= attempts:
                    logger.error(f"Store read {operation} failed after {attempts} attempts: {e}")
                    raise
                delay = self.timeouts.retry_delay_ms * (attempt + 1) / 1000.0
                logger.warning(
                    f"Store read {operation} unavailable, retrying in {delay:.3f}s",
                    extra={"operation": operation, "attempt": attempt + 1},
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def _cache_get(self, owner_id: str) -> AggregateView | None:
        try:
            return await call_with_timeout(
                "cache_get", self.cache.get(owner_id), self.timeouts.cache_timeout
            )
        except Exception as e:
            logger.warning(f"Cache get failed for {owner_id}: {e}")
            return None

    async def _cache_set(self, owner_id: str, view: AggregateView) -> None:
        try:
            await call_with_timeout(
                "cache_set",
                self.cache.set(owner_id, view, self.cache_ttl),
                self.timeouts.cache_timeout,
            )
        except Exception as e:
            logger.warning(f"Cache set failed for {owner_id}: {e}")

    async def _invalidate(self, owner_id: str) -> None:
        try:
            await call_with_timeout(
                "cache_invalidate", self.cache.invalidate(owner_id), self.timeouts.cache_timeout
            )
        except Exception as e:
            logger.warning(
                f"Cache invalidation failed for {owner_id}, stale until TTL: {e}",
                extra={"owner_id": owner_id},
            )

    async def _write(
        self,
        owner_id: str,
        operation: str,
        fn: Callable[[], Awaitable[WriteOutcome]],
        idempotency_token: str | None,
        timeout: float | None,
    ) -> WriteOutcome:
        async def run() -> WriteOutcome:
            outcome = await fn()
            await self._invalidate(owner_id)
            logger.debug(
                "Write applied",
                extra={
                    "owner_id": owner_id,
                    "operation": operation,
                    "category": outcome.category,
                    "key": outcome.key,
                    "version": outcome.new_version,
                },
            )
            return outcome

        return await self.controller.run_idempotent(
            owner_id, idempotency_token, operation, run, self._deadline(timeout)
        )

    # Reads

    async def get_all(self, owner_id: str, timeout: float | None = None) -> AggregateView:
        """Bulk view of every entry the owner has.

        Served from cache when present, otherwise built from one partition
        read and cached.
        """
        cached = await self._cache_get(owner_id)
        if cached is not None:
            return cached

        entries = await self._read("get_all", lambda: self.store.get_all(owner_id), timeout)
        view = build_view(owner_id, entries)
        await self._cache_set(owner_id, view)
        return view

    async def get_category(
        self,
        owner_id: str,
        category: Category | str,
        timeout: float | None = None,
    ) -> list[Entry]:
        """Entries of one category in display order.

        Raises:
            NotFoundError: If the category holds no entries
        """
        if isinstance(category, str):
            category = Category.parse(category)
        entries = await self._read(
            "get_category", lambda: self.store.get_category(owner_id, category), timeout
        )
        if not entries:
            raise NotFoundError(
                f"No entries in {category} for {owner_id}", owner_id, str(category)
            )
        return entries

    async def get_entry(
        self,
        owner_id: str,
        category: Category | str,
        key: str,
        timeout: float | None = None,
    ) -> Entry:
        """One entry, e.g. to learn its current version before a versioned write.

        Raises:
            NotFoundError: If the entry does not exist
        """
        if isinstance(category, str):
            category = Category.parse(category)

        entry: Entry | None
        if category.is_sortable:
            entries = await self._read(
                "get_category", lambda: self.store.get_category(owner_id, category), timeout
            )
            entry = next((e for e in entries if e.key == key), None)
        else:
            entry = await self._read(
                "get_entry", lambda: self.store.get_entry(owner_id, category, key), timeout
            )
        if entry is None:
            raise NotFoundError(f"No entry {category}/{key} for {owner_id}", owner_id,
                                str(category), key)
        return entry

    async def stats(self, owner_id: str, timeout: float | None = None) -> dict[str, int]:
        """Entry counts per category for the owner."""
        return await self._read("stats", lambda: self.store.stats(owner_id), timeout)

    # Single-entry writes

    async def _set_entry(
        self,
        entry: Entry,
        operation: str,
        expected_version: int | None,
        idempotency_token: str | None,
        timeout: float | None,
    ) -> WriteOutcome:
        deadline = self._deadline(timeout)

        async def apply() -> WriteOutcome:
            if expected_version is None:
                stored = await self.controller.unconditional_write(entry, deadline)
            else:
                stored = await self.controller.conditional_write(entry, expected_version, deadline)
            return WriteOutcome(
                operation=operation,
                owner_id=entry.owner_id,
                category=str(entry.category),
                key=entry.key,
                new_version=stored.version,
            )

        return await self._write(entry.owner_id, operation, apply, idempotency_token, timeout)

    async def set_toggle(
        self,
        owner_id: str,
        key: str,
        value: bool,
        expected_version: int | None = None,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Set a boolean toggle.

        Raises:
            VersionConflictError: If expected_version is given and stale
            InvalidValueKindError: If value is not a bool
        """
        entry = Entry.new(owner_id, Category.toggleable(), key, EntryValue.of_bool(value))
        return await self._set_entry(
            entry, "set_toggle", expected_version, idempotency_token, timeout
        )

    async def set_preference(
        self,
        owner_id: str,
        key: str,
        value: str,
        expected_version: int | None = None,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Set a string preference.

        Raises:
            VersionConflictError: If expected_version is given and stale
            InvalidValueKindError: If value is not a str
        """
        entry = Entry.new(owner_id, Category.preference(), key, EntryValue.of_string(value))
        return await self._set_entry(
            entry, "set_preference", expected_version, idempotency_token, timeout
        )

    async def flip_toggle(
        self,
        owner_id: str,
        key: str,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Invert an existing toggle, guarded by the version it was read at.

        Raises:
            NotFoundError: If the toggle does not exist
            VersionConflictError: If concurrent writers kept winning the CAS
        """
        category = Category.toggleable()

        def invert(current: Entry | None) -> EntryValue:
            if current is None:
                raise NotFoundError(f"No toggle {key} for {owner_id}", owner_id,
                                    str(category), key)
            return EntryValue.of_bool(not current.value.data)

        async def apply() -> WriteOutcome:
            stored = await self.controller.read_modify_write(
                owner_id, category, key, invert, timeout=self._deadline(timeout)
            )
            return WriteOutcome(
                operation="flip_toggle",
                owner_id=owner_id,
                category=str(category),
                key=key,
                new_version=stored.version,
            )

        return await self._write(owner_id, "flip_toggle", apply, idempotency_token, timeout)

    async def _delete_entry(
        self,
        owner_id: str,
        category: Category,
        key: str,
        operation: str,
        idempotency_token: str | None,
        timeout: float | None,
    ) -> WriteOutcome:
        async def apply() -> WriteOutcome:
            deleted = await call_with_timeout(
                "delete",
                self.store.delete(owner_id, category, UNORDERED, key),
                self._deadline(timeout),
            )
            return WriteOutcome(
                operation=operation,
                owner_id=owner_id,
                category=str(category),
                key=key,
                count=1 if deleted else 0,
            )

        return await self._write(owner_id, operation, apply, idempotency_token, timeout)

    async def delete_toggle(
        self,
        owner_id: str,
        key: str,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Remove a toggle. Removing an absent toggle is a no-op (count 0)."""
        return await self._delete_entry(
            owner_id, Category.toggleable(), key, "delete_toggle", idempotency_token, timeout
        )

    async def delete_preference(
        self,
        owner_id: str,
        key: str,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Remove a preference. Removing an absent preference is a no-op (count 0)."""
        return await self._delete_entry(
            owner_id, Category.preference(), key, "delete_preference", idempotency_token, timeout
        )

    # Favorites

    async def update_favorites(
        self,
        owner_id: str,
        domain: str,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
        expected_version: int | None = None,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Add and remove ids in a favorites set.

        Removals are applied before additions, so an id in both ends up
        present. Without expected_version the update re-reads and retries
        on conflict; with it, a stale version raises immediately.

        Raises:
            VersionConflictError: On a stale expected_version, or when the
                retry budget is exhausted
        """
        category = Category.favorites(domain)
        to_add = frozenset(add)
        to_remove = frozenset(remove)

        def merge(current: Entry | None) -> EntryValue:
            ids = current.value.data if current is not None else frozenset()
            return EntryValue.of_set((ids - to_remove) | to_add)  # type: ignore[operator]

        async def apply() -> WriteOutcome:
            stored = await self.controller.read_modify_write(
                owner_id,
                category,
                FAVORITES_KEY,
                merge,
                expected_version=expected_version,
                timeout=self._deadline(timeout),
            )
            return WriteOutcome(
                operation="update_favorites",
                owner_id=owner_id,
                category=str(category),
                key=FAVORITES_KEY,
                new_version=stored.version,
                count=len(stored.value.data),  # type: ignore[arg-type]
            )

        return await self._write(owner_id, "update_favorites", apply, idempotency_token, timeout)

    # Sortables

    async def replace_sortable(
        self,
        owner_id: str,
        domain: str,
        items: Sequence[tuple[str, str]],
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Replace a sortable list with `items` (key, value) in the given order.

        Not versioned and not atomic with reads: last writer wins, and a
        concurrent reader may see the list empty or partially written.

        Raises:
            ValueError: If a key appears twice
        """
        category = Category.sortable(domain)
        keys = [key for key, _ in items]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate keys in sortable {domain}")

        positions = seed_positions(len(items), self.ordering.stride)
        entries = [
            Entry.new(owner_id, category, key, EntryValue.of_string(value), position=pos)
            for (key, value), pos in zip(items, positions)
        ]
        return await self._replace(
            owner_id, category, entries, "replace_sortable", idempotency_token, timeout
        )

    async def _replace(
        self,
        owner_id: str,
        category: Category,
        entries: list[Entry],
        operation: str,
        idempotency_token: str | None,
        timeout: float | None,
    ) -> WriteOutcome:
        async def apply() -> WriteOutcome:
            return await self._store_replacement(owner_id, category, entries, operation, timeout)

        return await self._write(owner_id, operation, apply, idempotency_token, timeout)

    async def _store_replacement(
        self,
        owner_id: str,
        category: Category,
        entries: list[Entry],
        operation: str,
        timeout: float | None,
    ) -> WriteOutcome:
        stored = await call_with_timeout(
            "replace_category",
            self.store.replace_category(owner_id, category, entries),
            self._deadline(timeout),
        )
        return WriteOutcome(
            operation=operation,
            owner_id=owner_id,
            category=str(category),
            count=len(stored),
        )

    async def move_sortable_item(
        self,
        owner_id: str,
        domain: str,
        key: str,
        after_key: str | None = None,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Move one item directly after `after_key` (or to the front).

        Only the moved item is rewritten; it takes the midpoint position of
        its new neighbours.

        Raises:
            NotFoundError: If key or after_key is not in the list
            RenumberRequiredError: If the gap is exhausted; call
                renumber_sortable() and retry
            VersionConflictError: If the item changed since it was read
        """
        category = Category.sortable(domain)

        async def apply() -> WriteOutcome:
            entries = await self._read(
                "get_category", lambda: self.store.get_category(owner_id, category), timeout
            )
            try:
                new_position = plan_move(
                    [(e.position, e.key) for e in entries], key, after_key, self.ordering.stride
                )
            except KeyError as e:
                missing = e.args[0]
                raise NotFoundError(
                    f"No item {missing} in {category} for {owner_id}",
                    owner_id, str(category), missing,
                ) from e
            except RenumberRequiredError as e:
                logger.info(
                    "Sortable gap exhausted",
                    extra={"owner_id": owner_id, "category": str(category), "key": key},
                )
                raise RenumberRequiredError(e.before, e.after, str(category)) from e

            moving = next(e for e in entries if e.key == key)
            if new_position == moving.position:
                moved = moving
            else:
                moved = await self.controller.conditional_move(
                    moving, new_position, self._deadline(timeout)
                )
            return WriteOutcome(
                operation="move_sortable_item",
                owner_id=owner_id,
                category=str(category),
                key=key,
                new_version=moved.version,
                position=moved.position,
            )

        return await self._write(
            owner_id, "move_sortable_item", apply, idempotency_token, timeout
        )

    async def renumber_sortable(
        self,
        owner_id: str,
        domain: str,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Re-space a sortable list at the configured stride, keeping its order."""
        category = Category.sortable(domain)

        async def apply() -> WriteOutcome:
            entries = await self._read(
                "get_category", lambda: self.store.get_category(owner_id, category), timeout
            )
            spaced = restride([e.key for e in entries], self.ordering.stride)
            renumbered = [
                Entry.new(owner_id, category, entry.key, entry.value, position=pos)
                for entry, (_, pos) in zip(entries, spaced)
            ]
            logger.info(
                "Renumbering sortable",
                extra={"owner_id": owner_id, "category": str(category), "count": len(renumbered)},
            )
            return await self._store_replacement(
                owner_id, category, renumbered, "renumber_sortable", timeout
            )

        return await self._write(
            owner_id, "renumber_sortable", apply, idempotency_token, timeout
        )

    # Partition

    async def delete_owner(
        self,
        owner_id: str,
        idempotency_token: str | None = None,
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Remove every entry the owner has."""

        async def apply() -> WriteOutcome:
            removed = await call_with_timeout(
                "delete_owner", self.store.delete_owner(owner_id), self._deadline(timeout)
            )
            logger.info("Deleted owner partition", extra={"owner_id": owner_id, "count": removed})
            return WriteOutcome(
                operation="delete_owner",
                owner_id=owner_id,
                category="*",
                count=removed,
            )

        return await self._write(owner_id, "delete_owner", apply, idempotency_token, timeout)
