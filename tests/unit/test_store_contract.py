"""
Shared behavioural tests for every EntryStore backend.

Tests cover:
- Partition ordering by (category, position, key)
- Unconditional and conditional upserts
- Repositioning sortable entries
- Category replacement and deletes
- Partition bounds and stats
"""

import asyncio
import tempfile

import pytest

from prefstore.errors import PartitionLimitError
from prefstore.model import NOT_EXISTS, Category, Entry, EntryValue
from prefstore.store import EntryStore, InMemoryEntryStore, SqliteEntryStore

OWNER = "user-1"


def toggle(key, value=True, owner=OWNER):
    return Entry.new(owner, Category.toggleable(), key, EntryValue.of_bool(value))


def sortable(key, position, domain="dashboard", owner=OWNER):
    return Entry.new(
        owner, Category.sortable(domain), key, EntryValue.of_string(key.upper()), position
    )


class TestStoreContract:
    """Behaviour every backend must share."""

    @pytest.fixture(params=["memory", "sqlite"])
    def store(self, request):
        """Create a store of each backend."""
        if request.param == "memory":
            yield InMemoryEntryStore(max_entries_per_owner=5)
        else:
            with tempfile.TemporaryDirectory() as tmpdir:
                yield SqliteEntryStore(
                    tmpdir, num_shards=2, wal_mode=False, max_entries_per_owner=5
                )

    def test_implements_protocol(self, store):
        """Backends satisfy the EntryStore protocol."""
        assert isinstance(store, EntryStore)

    @pytest.mark.asyncio
    async def test_insert_then_overwrite(self, store):
        """Insert gives version 1, overwrite bumps it."""
        first = await store.upsert_unconditional(toggle("dark"))
        assert first.version == 1

        second = await store.upsert_unconditional(toggle("dark", False))
        assert second.version == 2
        assert second.created_at == first.created_at

        fetched = await store.get_entry(OWNER, Category.toggleable(), "dark")
        assert fetched.value.data is False
        assert fetched.version == 2

    @pytest.mark.asyncio
    async def test_get_all_ordering(self, store):
        """Partition reads come back in (category, position, key) order."""
        await store.upsert_unconditional(sortable("b", 2000))
        await store.upsert_unconditional(sortable("a", 3000))
        await store.upsert_unconditional(toggle("dark"))
        await store.upsert_unconditional(sortable("c", 1000))

        entries = await store.get_all(OWNER)
        assert [(str(e.category), e.key) for e in entries] == [
            ("sortable:dashboard", "c"),
            ("sortable:dashboard", "b"),
            ("sortable:dashboard", "a"),
            ("toggleable", "dark"),
        ]

    @pytest.mark.asyncio
    async def test_equal_positions_order_by_key(self, store):
        """Key breaks ties between equal positions."""
        await store.upsert_unconditional(sortable("b", 1500))
        await store.upsert_unconditional(sortable("a", 1500))

        entries = await store.get_category(OWNER, Category.sortable("dashboard"))
        assert [e.key for e in entries] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_owners_are_isolated(self, store):
        """One owner never sees another's entries."""
        await store.upsert_unconditional(toggle("dark", owner="user-2"))
        assert await store.get_all(OWNER) == []

    @pytest.mark.asyncio
    async def test_conditional_create(self, store):
        """NOT_EXISTS creates only when absent."""
        created = await store.upsert_conditional(toggle("dark"), NOT_EXISTS)
        assert created.applied
        assert created.entry.version == 1

        again = await store.upsert_conditional(toggle("dark"), NOT_EXISTS)
        assert not again.applied
        assert again.current_version == 1

    @pytest.mark.asyncio
    async def test_conditional_update(self, store):
        """Matching version applies, stale version is rejected."""
        await store.upsert_unconditional(toggle("dark"))

        ok = await store.upsert_conditional(toggle("dark", False), 1)
        assert ok.applied
        assert ok.entry.version == 2

        stale = await store.upsert_conditional(toggle("dark", True), 1)
        assert not stale.applied
        assert stale.current_version == 2
        assert stale.entry.value.data is False

    @pytest.mark.asyncio
    async def test_conditional_on_missing(self, store):
        """Expecting a version of an absent entry fails."""
        result = await store.upsert_conditional(toggle("dark"), 3)
        assert not result.applied
        assert result.current_version is None

    @pytest.mark.asyncio
    async def test_compare_and_swap(self, store):
        """The narrow CAS primitive mirrors upsert_conditional."""
        stored = await store.upsert_unconditional(toggle("dark"))
        assert await store.compare_and_swap(stored.identity, 1, EntryValue.of_bool(False))
        assert not await store.compare_and_swap(stored.identity, 1, EntryValue.of_bool(True))

    @pytest.mark.asyncio
    async def test_reposition(self, store):
        """Reposition moves the entry and bumps its version."""
        await store.upsert_unconditional(sortable("a", 1000))
        await store.upsert_unconditional(sortable("b", 2000))
        category = Category.sortable("dashboard")

        result = await store.reposition(OWNER, category, "b", 2000, 500, 1)
        assert result.applied
        assert result.entry.position == 500
        assert result.entry.version == 2

        entries = await store.get_category(OWNER, category)
        assert [(e.key, e.position) for e in entries] == [("b", 500), ("a", 1000)]

    @pytest.mark.asyncio
    async def test_reposition_stale_version(self, store):
        """Reposition with a stale version does nothing."""
        await store.upsert_unconditional(sortable("a", 1000))
        category = Category.sortable("dashboard")

        result = await store.reposition(OWNER, category, "a", 1000, 500, 7)
        assert not result.applied
        assert result.current_version == 1
        entries = await store.get_category(OWNER, category)
        assert entries[0].position == 1000

    @pytest.mark.asyncio
    async def test_reposition_missing(self, store):
        """Repositioning a vanished entry is rejected."""
        result = await store.reposition(OWNER, Category.sortable("d"), "a", 1000, 500, 1)
        assert not result.applied
        assert result.entry is None

    @pytest.mark.asyncio
    async def test_replace_category(self, store):
        """Replace drops old entries and inserts new ones at version 1."""
        await store.upsert_unconditional(sortable("old", 1000))
        await store.upsert_unconditional(toggle("dark"))
        category = Category.sortable("dashboard")

        stored = await store.replace_category(
            OWNER, category, [sortable("x", 1000), sortable("y", 2000)]
        )
        assert [e.version for e in stored] == [1, 1]

        entries = await store.get_category(OWNER, category)
        assert [e.key for e in entries] == ["x", "y"]
        assert await store.get_entry(OWNER, Category.toggleable(), "dark") is not None

    @pytest.mark.asyncio
    async def test_overlapping_replaces_keep_one_list(self, store):
        """Two replaces that overlap leave exactly one writer's list."""
        category = Category.sortable("dashboard")
        forward = [sortable("x", 1000), sortable("y", 2000)]
        backward = [sortable("y", 1000), sortable("x", 2000)]

        for _ in range(20):
            held = isinstance(store, InMemoryEntryStore)
            if held:
                store.hold_replacements()
            tasks = [
                asyncio.ensure_future(store.replace_category(OWNER, category, forward)),
                asyncio.ensure_future(store.replace_category(OWNER, category, backward)),
            ]
            if held:
                # Both deletes finish before either insert starts.
                await store.wait_for_replace_pause()
                await asyncio.sleep(0.01)
                store.release_replacements()
            await asyncio.gather(*tasks)

            entries = await store.get_category(OWNER, category)
            assert sorted(e.key for e in entries) == ["x", "y"]
            assert [e.key for e in entries] in (["x", "y"], ["y", "x"])

    @pytest.mark.asyncio
    async def test_replace_rejects_foreign_entries(self, store):
        """Entries from another category are refused."""
        with pytest.raises(ValueError):
            await store.replace_category(
                OWNER, Category.sortable("dashboard"), [sortable("x", 1000, domain="other")]
            )

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store):
        """Deleting an absent entry is a no-op."""
        await store.upsert_unconditional(toggle("dark"))

        assert await store.delete(OWNER, Category.toggleable(), 0, "dark") is True
        assert await store.delete(OWNER, Category.toggleable(), 0, "dark") is False
        assert await store.delete(OWNER, Category.toggleable(), 0, "never") is False

    @pytest.mark.asyncio
    async def test_partition_limit(self, store):
        """Inserts beyond the partition bound fail; updates still work."""
        for i in range(5):
            await store.upsert_unconditional(toggle(f"t{i}"))

        with pytest.raises(PartitionLimitError):
            await store.upsert_unconditional(toggle("t5"))

        updated = await store.upsert_unconditional(toggle("t0", False))
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_replace_respects_limit(self, store):
        """Replacement that would overflow the partition fails before deleting."""
        await store.upsert_unconditional(toggle("dark"))
        await store.upsert_unconditional(sortable("a", 1000))
        category = Category.sortable("dashboard")

        too_many = [sortable(f"k{i}", (i + 1) * 1000) for i in range(5)]
        with pytest.raises(PartitionLimitError):
            await store.replace_category(OWNER, category, too_many)

        entries = await store.get_category(OWNER, category)
        assert [e.key for e in entries] == ["a"]

    @pytest.mark.asyncio
    async def test_delete_owner_and_stats(self, store):
        """Stats count per category; delete_owner empties the partition."""
        await store.upsert_unconditional(toggle("dark"))
        await store.upsert_unconditional(toggle("compact"))
        await store.upsert_unconditional(sortable("a", 1000))

        stats = await store.stats(OWNER)
        assert stats == {"toggleable": 2, "sortable:dashboard": 1, "total": 3}

        assert await store.delete_owner(OWNER) == 3
        assert await store.get_all(OWNER) == []
        assert (await store.stats(OWNER))["total"] == 0


class TestSqliteSharding:
    """Tests specific to the sharded SQLite backend."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def test_shard_is_stable(self, data_dir):
        """The same owner always maps to the same shard."""
        store = SqliteEntryStore(data_dir, num_shards=8)
        assert store.shard_for_owner("user-1") == store.shard_for_owner("user-1")
        assert 0 <= store.shard_for_owner("user-1") < 8

    def test_invalid_shard_count(self, data_dir):
        """At least one shard is required."""
        with pytest.raises(ValueError):
            SqliteEntryStore(data_dir, num_shards=0)

    @pytest.mark.asyncio
    async def test_initialize_creates_files(self, data_dir):
        """initialize() creates every shard file."""
        store = SqliteEntryStore(data_dir, num_shards=3, wal_mode=False)
        await store.initialize()

        for shard in range(3):
            assert (store.data_dir / f"prefs_shard_{shard:03d}.db").exists()

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, data_dir):
        """A new store over the same directory sees earlier writes."""
        first = SqliteEntryStore(data_dir, num_shards=2, wal_mode=False)
        await first.upsert_unconditional(
            Entry.new(OWNER, Category.favorites("shows"), "_set", EntryValue.of_set(["x", "y"]))
        )
        await first.close()

        second = SqliteEntryStore(data_dir, num_shards=2, wal_mode=False)
        entries = await second.get_all(OWNER)
        assert len(entries) == 1
        assert entries[0].value.data == frozenset({"x", "y"})
