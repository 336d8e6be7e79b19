"""
Unit tests for idempotency ledgers and the concurrency controller.

Tests cover:
- Ledger lookup, expiry and purge for both backends
- First-write-wins for live tokens
- Conditional writes and conflict errors
- Read-modify-write retries
- Idempotent execution and replay
"""

import asyncio
import tempfile
from dataclasses import replace

import pytest

from prefstore.concurrency import (
    ConcurrencyController,
    InMemoryIdempotencyLedger,
    SqliteIdempotencyLedger,
    WriteOutcome,
    call_with_timeout,
)
from prefstore.errors import StoreTimeoutError, UnavailableError, VersionConflictError
from prefstore.model import Category, Entry, EntryValue
from prefstore.store import InMemoryEntryStore

OWNER = "user-1"


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self):
        self.now = 1_000_000

    def __call__(self):
        return self.now


def outcome(operation="set_toggle", version=1):
    return WriteOutcome(
        operation=operation, owner_id=OWNER, category="toggleable", key="dark",
        new_version=version,
    )


class TestLedgers:
    """Behaviour shared by ledger backends."""

    @pytest.fixture
    def clock(self):
        """Create a controllable clock."""
        return FakeClock()

    @pytest.fixture(params=["memory", "sqlite"])
    def ledger(self, request, clock):
        """Create a ledger of each backend with a 60 second TTL."""
        if request.param == "memory":
            yield InMemoryIdempotencyLedger(default_ttl=60, clock=clock)
        else:
            with tempfile.TemporaryDirectory() as tmpdir:
                yield SqliteIdempotencyLedger(tmpdir, default_ttl=60, wal_mode=False, clock=clock)

    @pytest.mark.asyncio
    async def test_lookup_missing(self, ledger):
        """Unknown tokens have no outcome."""
        assert await ledger.lookup(OWNER, "tok") is None

    @pytest.mark.asyncio
    async def test_record_and_lookup(self, ledger):
        """Recorded outcomes are returned."""
        await ledger.record(OWNER, "tok", outcome())
        assert await ledger.lookup(OWNER, "tok") == outcome()

    @pytest.mark.asyncio
    async def test_tokens_scoped_per_owner(self, ledger):
        """The same token under another owner is unrelated."""
        await ledger.record(OWNER, "tok", outcome())
        assert await ledger.lookup("user-2", "tok") is None

    @pytest.mark.asyncio
    async def test_first_outcome_wins(self, ledger):
        """A live record is not overwritten."""
        await ledger.record(OWNER, "tok", outcome(version=1))
        await ledger.record(OWNER, "tok", outcome(version=9))
        assert (await ledger.lookup(OWNER, "tok")).new_version == 1

    @pytest.mark.asyncio
    async def test_expiry_and_reuse(self, ledger, clock):
        """Expired tokens are forgotten and may be recorded again."""
        await ledger.record(OWNER, "tok", outcome(version=1))
        clock.now += 61_000
        assert await ledger.lookup(OWNER, "tok") is None

        await ledger.record(OWNER, "tok", outcome(version=2))
        assert (await ledger.lookup(OWNER, "tok")).new_version == 2

    @pytest.mark.asyncio
    async def test_purge_expired(self, ledger, clock):
        """Purge removes only expired records."""
        await ledger.record(OWNER, "old", outcome())
        clock.now += 30_000
        await ledger.record(OWNER, "new", outcome())
        clock.now += 31_000

        assert await ledger.purge_expired() == 1
        assert await ledger.lookup(OWNER, "new") is not None


class TestCallWithTimeout:
    """Tests for the deadline wrapper."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        """Fast calls pass through."""
        async def fast():
            return 42

        assert await call_with_timeout("op", fast(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_timeout_raises_unavailable(self):
        """Slow calls raise StoreTimeoutError, an UnavailableError."""
        with pytest.raises(StoreTimeoutError) as exc_info:
            await call_with_timeout("slow_op", asyncio.sleep(1), 0.01)
        assert isinstance(exc_info.value, UnavailableError)
        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.operation == "slow_op"


class TestConcurrencyController:
    """Tests for ConcurrencyController."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store."""
        return InMemoryEntryStore()

    @pytest.fixture
    def ledger(self):
        """Create an in-memory ledger."""
        return InMemoryIdempotencyLedger()

    @pytest.fixture
    def controller(self, store, ledger):
        """Create a controller with two CAS retries."""
        return ConcurrencyController(store, ledger, max_cas_retries=2)

    def toggle(self, value=True):
        return Entry.new(OWNER, Category.toggleable(), "dark", EntryValue.of_bool(value))

    @pytest.mark.asyncio
    async def test_conditional_write(self, controller):
        """Matching version writes; stale version conflicts."""
        await controller.unconditional_write(self.toggle())
        stored = await controller.conditional_write(self.toggle(False), expected_version=1)
        assert stored.version == 2

        with pytest.raises(VersionConflictError) as exc_info:
            await controller.conditional_write(self.toggle(True), expected_version=1)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert exc_info.value.code == "VERSION_CONFLICT"

    @pytest.mark.asyncio
    async def test_read_modify_write_creates(self, controller):
        """Absent entries are created from mutate(None)."""
        stored = await controller.read_modify_write(
            OWNER, Category.favorites("shows"), "_set",
            lambda current: EntryValue.of_set({"s1"}),
        )
        assert stored.version == 1
        assert stored.value.data == frozenset({"s1"})

    @pytest.mark.asyncio
    async def test_read_modify_write_retries(self, controller, store):
        """A lost race is retried against the fresh version."""
        await controller.unconditional_write(self.toggle())
        calls = []

        def mutate(current):
            calls.append(current.version)
            if len(calls) == 1:
                # Simulate a concurrent writer between read and CAS.
                store._partitions[OWNER][current.identity] = replace(
                    current, version=current.version + 1
                )
            return EntryValue.of_bool(not current.value.data)

        stored = await controller.read_modify_write(OWNER, Category.toggleable(), "dark", mutate)
        assert calls == [1, 2]
        assert stored.version == 3

    @pytest.mark.asyncio
    async def test_read_modify_write_expected_version_single_attempt(self, controller):
        """With a caller version there is exactly one attempt."""
        await controller.unconditional_write(self.toggle())
        calls = []

        def mutate(current):
            calls.append(1)
            return EntryValue.of_bool(False)

        with pytest.raises(VersionConflictError):
            await controller.read_modify_write(
                OWNER, Category.toggleable(), "dark", mutate, expected_version=5
            )
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_run_idempotent_without_token(self, controller):
        """No token means the write always runs."""
        runs = []

        async def write():
            runs.append(1)
            return outcome()

        await controller.run_idempotent(OWNER, None, "set_toggle", write)
        await controller.run_idempotent(OWNER, None, "set_toggle", write)
        assert len(runs) == 2

    @pytest.mark.asyncio
    async def test_run_idempotent_replays(self, controller):
        """A repeated token replays the first outcome."""
        runs = []

        async def write():
            runs.append(1)
            return outcome(version=len(runs))

        first = await controller.run_idempotent(OWNER, "tok", "set_toggle", write)
        second = await controller.run_idempotent(OWNER, "tok", "set_toggle", write)

        assert len(runs) == 1
        assert first.replayed is False
        assert second.replayed is True
        assert second.new_version == first.new_version

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_run_once(self, controller):
        """Duplicate tokens in flight execute one write."""
        runs = []

        async def write():
            runs.append(1)
            await asyncio.sleep(0.01)
            return outcome()

        results = await asyncio.gather(
            *(controller.run_idempotent(OWNER, "tok", "set_toggle", write) for _ in range(5))
        )
        assert len(runs) == 1
        assert sum(1 for r in results if not r.replayed) == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_recorded(self, controller):
        """A failed write can be retried under the same token."""
        attempts = []

        async def write():
            attempts.append(1)
            if len(attempts) == 1:
                raise UnavailableError("store down")
            return outcome()

        with pytest.raises(UnavailableError):
            await controller.run_idempotent(OWNER, "tok", "set_toggle", write)

        result = await controller.run_idempotent(OWNER, "tok", "set_toggle", write)
        assert result.replayed is False
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_retries_after_failure_run_once(self, controller):
        """Retries queued behind a failed attempt still execute one write."""
        executions = []

        def attempt(name, fail=False):
            async def write():
                await asyncio.sleep(0.01)
                if fail:
                    raise UnavailableError("store down")
                executions.append(name)
                return outcome()

            return write

        async def late_retry():
            await asyncio.sleep(0.011)
            return await controller.run_idempotent(OWNER, "tok", "set_toggle", attempt("C"))

        results = await asyncio.gather(
            controller.run_idempotent(OWNER, "tok", "set_toggle", attempt("A", fail=True)),
            controller.run_idempotent(OWNER, "tok", "set_toggle", attempt("B")),
            late_retry(),
            return_exceptions=True,
        )

        assert isinstance(results[0], UnavailableError)
        assert executions == ["B"]
        assert results[1].replayed is False
        assert results[2].replayed is True
        assert controller._token_locks == {}

    @pytest.mark.asyncio
    async def test_ledger_failure_still_returns_outcome(self, controller, ledger):
        """A write that landed is reported even if recording fails."""

        async def broken_record(*args, **kwargs):
            raise UnavailableError("ledger down")

        ledger.record = broken_record

        async def write():
            return outcome()

        result = await controller.run_idempotent(OWNER, "tok", "set_toggle", write)
        assert result == outcome()
