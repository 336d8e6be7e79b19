"""
Optimistic concurrency and write idempotency.

The controller turns the store's compare-and-set results into the errors
callers act on, and wraps mutating operations with the idempotency ledger.

Protocol:
    1. Client reads an entry and remembers its version
    2. Client submits the update tagged with that version
    3. Controller calls upsert_conditional
    4. applied=False becomes VersionConflictError; the client re-reads and
       retries, nothing is silently overwritten

Invariants:
    - Version checks always go to the store, never to the cache
    - A token with a recorded outcome never executes its write again
    - Duplicate tokens in flight in this process run one at a time
    - Category replaces bypass CAS (last writer wins)

How to change safely:
    - Keep max_cas_retries small; each retry is a full read plus CAS
    - Never record failed outcomes; a retry must re-evaluate
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from ..errors import VersionConflictError
from ..model import NOT_EXISTS, UNORDERED, Category, Entry, EntryValue
from ..store import CasResult, EntryStore
from .deadline import call_with_timeout
from .idempotency import IdempotencyLedger, WriteOutcome

logger = logging.getLogger(__name__)


class ConcurrencyController:
    """Versioned writes and idempotent execution over an EntryStore.

    Attributes:
        store: Store of record
        ledger: Token -> outcome ledger
        max_cas_retries: Extra attempts for read-modify-write without a
            caller-supplied version

    Example:
        >>> controller = ConcurrencyController(store, ledger)
        >>> stored = await controller.conditional_write(entry, expected_version=3)
    """

    def __init__(
        self,
        store: EntryStore,
        ledger: IdempotencyLedger,
        max_cas_retries: int = 3,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.max_cas_retries = max_cas_retries
        # (owner_id, token) -> (lock, tasks holding or waiting on it)
        self._token_locks: dict[tuple[str, str], tuple[asyncio.Lock, int]] = {}

    async def unconditional_write(self, entry: Entry, timeout: float | None = None) -> Entry:
        """Insert or overwrite without a version check."""
        return await call_with_timeout(
            "upsert_unconditional", self.store.upsert_unconditional(entry), timeout
        )

    async def conditional_write(
        self,
        entry: Entry,
        expected_version: int,
        timeout: float | None = None,
    ) -> Entry:
        """Write only if the stored version equals expected_version.

        Raises:
            VersionConflictError: If the stored version differs
        """
        result = await call_with_timeout(
            "upsert_conditional",
            self.store.upsert_conditional(entry, expected_version),
            timeout,
        )
        return self._applied_or_conflict(entry, result, expected_version)

    async def conditional_move(
        self,
        entry: Entry,
        new_position: int,
        timeout: float | None = None,
    ) -> Entry:
        """Move a sortable entry, guarded by the version it was read at.

        Raises:
            VersionConflictError: If the entry changed or moved since it was read
        """
        result = await call_with_timeout(
            "reposition",
            self.store.reposition(
                entry.owner_id,
                entry.category,
                entry.key,
                entry.position,
                new_position,
                entry.version,
            ),
            timeout,
        )
        return self._applied_or_conflict(entry, result, entry.version)

    async def read_modify_write(
        self,
        owner_id: str,
        category: Category,
        key: str,
        mutate: Callable[[Entry | None], EntryValue],
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> Entry:
        """Derive a new value from the current one and CAS it in.

        With expected_version the write is attempted once against that
        version. Without it the current version is used and the read/CAS
        cycle repeats up to max_cas_retries extra times on conflict.

        Raises:
            VersionConflictError: If every attempt lost the race
        """
        attempts = 1 if expected_version is not None else self.max_cas_retries + 1
        result: CasResult | None = None
        basis = NOT_EXISTS

        for attempt in range(attempts):
            current = await call_with_timeout(
                "get_entry", self.store.get_entry(owner_id, category, key), timeout
            )
            if expected_version is not None:
                basis = expected_version
            else:
                basis = current.version if current else NOT_EXISTS

            entry = Entry.new(owner_id, category, key, mutate(current), position=UNORDERED)
            result = await call_with_timeout(
                "upsert_conditional", self.store.upsert_conditional(entry, basis), timeout
            )
            if result.applied:
                assert result.entry is not None
                return result.entry

            logger.debug(
                "CAS attempt lost",
                extra={
                    "owner_id": owner_id,
                    "category": str(category),
                    "key": key,
                    "attempt": attempt + 1,
                },
            )

        assert result is not None
        raise self._conflict(owner_id, str(category), key, basis, result.current_version)

    async def run_idempotent(
        self,
        owner_id: str,
        token: str | None,
        operation: str,
        fn: Callable[[], Awaitable[WriteOutcome]],
        timeout: float | None = None,
    ) -> WriteOutcome:
        """Execute `fn` at most once per (owner_id, token).

        Args:
            owner_id: Partition key the token is scoped to
            token: Client-supplied idempotency token, or None to just run
            operation: Operation name, stored with the outcome
            fn: The write to perform
            timeout: Deadline for ledger calls

        Returns:
            The new outcome, or the recorded one with replayed=True
        """
        if token is None:
            return await fn()

        lock_key = (owner_id, token)
        held = self._token_locks.get(lock_key)
        lock, users = held if held is not None else (asyncio.Lock(), 0)
        self._token_locks[lock_key] = (lock, users + 1)
        try:
            async with lock:
                recorded = await call_with_timeout(
                    "idempotency_lookup", self.ledger.lookup(owner_id, token), timeout
                )
                if recorded is not None:
                    if recorded.operation != operation:
                        logger.warning(
                            "Idempotency token reused for a different operation",
                            extra={
                                "owner_id": owner_id,
                                "recorded_operation": recorded.operation,
                                "operation": operation,
                            },
                        )
                    logger.debug(
                        "Replaying recorded outcome",
                        extra={"owner_id": owner_id, "operation": recorded.operation},
                    )
                    return replace(recorded, replayed=True)

                outcome = await fn()

                try:
                    await call_with_timeout(
                        "idempotency_record",
                        self.ledger.record(owner_id, token, outcome),
                        timeout,
                    )
                except Exception as e:
                    # The write already happened; report it rather than invite a blind retry.
                    logger.error(
                        f"Failed to record idempotency outcome: {e}",
                        extra={"owner_id": owner_id, "operation": operation},
                    )
                return outcome
        finally:
            lock, users = self._token_locks[lock_key]
            if users == 1:
                del self._token_locks[lock_key]
            else:
                self._token_locks[lock_key] = (lock, users - 1)

    def _applied_or_conflict(
        self,
        entry: Entry,
        result: CasResult,
        expected_version: int,
    ) -> Entry:
        if result.applied:
            assert result.entry is not None
            return result.entry
        raise self._conflict(
            entry.owner_id, str(entry.category), entry.key, expected_version,
            result.current_version,
        )

    @staticmethod
    def _conflict(
        owner_id: str,
        category: str,
        key: str,
        expected_version: int,
        actual_version: int | None,
    ) -> VersionConflictError:
        logger.info(
            "Version conflict",
            extra={
                "owner_id": owner_id,
                "category": category,
                "key": key,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        return VersionConflictError(owner_id, category, key, expected_version, actual_version)
