"""
Sharded SQLite entry store for prefstore.

Owners are hashed onto a fixed number of SQLite files. Inside a shard, one
WITHOUT ROWID table is clustered on (owner_id, category, position, key), so a
whole owner partition is a single contiguous range scan and comes back in
display order without a sort.

Invariants:
    - An owner always maps to the same shard (md5 of owner_id)
    - Exactly one value column is populated; a CHECK constraint enforces it
    - Conditional writes run inside BEGIN IMMEDIATE and never partially apply
    - replace_category commits its delete before it starts its insert

How to change safely:
    - Changing num_shards remaps owners; migrate data before changing it
    - Schema migrations must be backward compatible
    - Use transactions for all multi-statement writes

Table schema:
    entries:
        - owner_id TEXT
        - category TEXT
        - position INTEGER (0 for unordered categories)
        - key TEXT
        - value_kind TEXT ('bool', 'str', 'str_set')
        - bool_value INTEGER
        - string_value TEXT
        - set_value TEXT (JSON array, sorted)
        - version INTEGER
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (owner_id, category, position, key)
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from ..errors import PartitionLimitError, UnavailableError
from ..model import (
    NOT_EXISTS,
    UNORDERED,
    Category,
    Entry,
    EntryIdentity,
    EntryValue,
    ValueKind,
    now_ms,
)
from .base import CasResult, check_replacement

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def open_connection(
    db_path: Path,
    busy_timeout_ms: int = 5000,
    wal_mode: bool = True,
) -> Iterator[sqlite3.Connection]:
    """Open a configured SQLite connection, closing it on exit.

    Args:
        db_path: Database file
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Enable SQLite WAL journal mode

    Yields:
        SQLite connection in autocommit mode with Row factory
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        timeout=busy_timeout_ms / 1000.0,
        isolation_level=None,  # Autocommit by default, explicit transactions
    )
    conn.row_factory = sqlite3.Row

    try:
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
        if wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        yield conn
    finally:
        conn.close()


async def run_blocking(operation: str, fn: Callable[..., T], *args: Any) -> T:
    """Run blocking SQLite work in the default executor.

    Raises:
        UnavailableError: If SQLite reports an operational failure
    """
    loop = asyncio.get_event_loop()
    try:
        return await loop.run_in_executor(None, functools.partial(fn, *args))
    except sqlite3.OperationalError as e:
        logger.error(f"SQLite {operation} failed: {e}")
        raise UnavailableError(f"SQLite {operation} failed: {e}", operation=operation) from e


def _encode_value(value: EntryValue) -> tuple[str, int | None, str | None, str | None]:
    if value.kind == ValueKind.BOOLEAN:
        return value.kind.value, int(value.data), None, None
    if value.kind == ValueKind.STRING:
        return value.kind.value, None, value.data, None  # type: ignore[return-value]
    return value.kind.value, None, None, json.dumps(sorted(value.data))


def _decode_value(row: sqlite3.Row) -> EntryValue:
    kind = ValueKind.from_str(row["value_kind"])
    if kind == ValueKind.BOOLEAN:
        return EntryValue.of_bool(bool(row["bool_value"]))
    if kind == ValueKind.STRING:
        return EntryValue.of_string(row["string_value"])
    return EntryValue.of_set(json.loads(row["set_value"]))


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        owner_id=row["owner_id"],
        category=Category.parse(row["category"]),
        key=row["key"],
        value=_decode_value(row),
        position=row["position"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SqliteEntryStore:
    """Sharded SQLite implementation of EntryStore.

    Thread safety:
        Each operation opens its own connection inside an executor thread.
        SQLite serialises writers per shard; BEGIN IMMEDIATE takes the write
        lock before the version is read, so compare-and-set is atomic.

    Example:
        >>> store = SqliteEntryStore("/var/lib/prefstore", num_shards=16)
        >>> await store.initialize()
        >>> await store.get_all("user-1")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        num_shards: int = 16,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        max_entries_per_owner: int = 10_000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for shard database files
            num_shards: Number of shard files owners are hashed onto
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            max_entries_per_owner: Partition bound per owner
        """
        if num_shards < 1:
            raise ValueError(f"num_shards must be positive, got {num_shards}")
        self.data_dir = Path(data_dir)
        self.num_shards = num_shards
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.max_entries_per_owner = max_entries_per_owner
        self._initialized: set[int] = set()
        self._init_lock = threading.Lock()

    def shard_for_owner(self, owner_id: str) -> int:
        """Shard number for an owner."""
        digest = hashlib.md5(owner_id.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % self.num_shards

    def get_db_path(self, owner_id: str) -> Path:
        """Database file holding the owner's partition."""
        return self._shard_path(self.shard_for_owner(owner_id))

    def _shard_path(self, shard: int) -> Path:
        return self.data_dir / f"prefs_shard_{shard:03d}.db"

    @contextmanager
    def _connect(self, owner_id: str) -> Iterator[sqlite3.Connection]:
        shard = self.shard_for_owner(owner_id)
        with open_connection(self._shard_path(shard), self.busy_timeout_ms, self.wal_mode) as conn:
            if shard not in self._initialized:
                with self._init_lock:
                    if shard not in self._initialized:
                        self._create_schema(conn)
                        self._initialized.add(shard)
            yield conn

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entries (
                owner_id TEXT NOT NULL,
                category TEXT NOT NULL,
                position INTEGER NOT NULL,
                key TEXT NOT NULL,
                value_kind TEXT NOT NULL,
                bool_value INTEGER,
                string_value TEXT,
                set_value TEXT,
                version INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (owner_id, category, position, key),
                CHECK (
                    (value_kind = 'bool' AND bool_value IS NOT NULL
                        AND string_value IS NULL AND set_value IS NULL)
                    OR (value_kind = 'str' AND string_value IS NOT NULL
                        AND bool_value IS NULL AND set_value IS NULL)
                    OR (value_kind = 'str_set' AND set_value IS NOT NULL
                        AND bool_value IS NULL AND string_value IS NULL)
                )
            ) WITHOUT ROWID;

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create every shard file and its schema up front."""

        def _init() -> None:
            for shard in range(self.num_shards):
                with open_connection(
                    self._shard_path(shard), self.busy_timeout_ms, self.wal_mode
                ) as conn:
                    with self._init_lock:
                        self._create_schema(conn)
                        self._initialized.add(shard)

        await run_blocking("initialize", _init)
        logger.info(
            "Initialized entry store",
            extra={"data_dir": str(self.data_dir), "num_shards": self.num_shards},
        )

    # Reads

    async def get_all(self, owner_id: str) -> list[Entry]:
        return await run_blocking("get_all", self._get_all, owner_id)

    def _get_all(self, owner_id: str) -> list[Entry]:
        with self._connect(owner_id) as conn:
            cursor = conn.execute(
                """
                SELECT * FROM entries
                WHERE owner_id = ?
                ORDER BY category, position, key
                """,
                (owner_id,),
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]

    async def get_category(self, owner_id: str, category: Category) -> list[Entry]:
        return await run_blocking("get_category", self._get_category, owner_id, str(category))

    def _get_category(self, owner_id: str, category: str) -> list[Entry]:
        with self._connect(owner_id) as conn:
            cursor = conn.execute(
                """
                SELECT * FROM entries
                WHERE owner_id = ? AND category = ?
                ORDER BY position, key
                """,
                (owner_id, category),
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]

    async def get_entry(
        self,
        owner_id: str,
        category: Category,
        key: str,
        position: int = UNORDERED,
    ) -> Entry | None:
        identity = EntryIdentity(owner_id, str(category), position, key)
        return await run_blocking("get_entry", self._get_entry, identity)

    def _get_entry(self, identity: EntryIdentity) -> Entry | None:
        with self._connect(identity.owner_id) as conn:
            row = self._select(conn, identity)
            return _row_to_entry(row) if row else None

    @staticmethod
    def _select(conn: sqlite3.Connection, identity: EntryIdentity) -> sqlite3.Row | None:
        cursor = conn.execute(
            """
            SELECT * FROM entries
            WHERE owner_id = ? AND category = ? AND position = ? AND key = ?
            """,
            tuple(identity),
        )
        return cursor.fetchone()

    # Writes

    async def upsert_unconditional(self, entry: Entry) -> Entry:
        result = await run_blocking("upsert_unconditional", self._upsert, entry, None)
        assert result.entry is not None
        return result.entry

    async def upsert_conditional(self, entry: Entry, expected_version: int) -> CasResult:
        return await run_blocking("upsert_conditional", self._upsert, entry, expected_version)

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

    def _upsert(self, entry: Entry, expected_version: int | None) -> CasResult:
        identity = entry.identity
        kind, bool_value, string_value, set_value = _encode_value(entry.value)
        ts = now_ms()

        with self._connect(entry.owner_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._select(conn, identity)
                actual = row["version"] if row else NOT_EXISTS

                if expected_version is not None and actual != expected_version:
                    conn.execute("ROLLBACK")
                    current = _row_to_entry(row) if row else None
                    return CasResult(False, current, row["version"] if row else None)

                if row:
                    version = actual + 1
                    created_at = row["created_at"]
                    conn.execute(
                        """
                        UPDATE entries
                        SET value_kind = ?, bool_value = ?, string_value = ?, set_value = ?,
                            version = ?, updated_at = ?
                        WHERE owner_id = ? AND category = ? AND position = ? AND key = ?
                        """,
                        (kind, bool_value, string_value, set_value, version, ts, *identity),
                    )
                else:
                    self._check_limit(conn, entry.owner_id, adding=1)
                    version = 1
                    created_at = ts
                    conn.execute(
                        """
                        INSERT INTO entries (owner_id, category, position, key,
                                             value_kind, bool_value, string_value, set_value,
                                             version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (*identity, kind, bool_value, string_value, set_value, version, ts, ts),
                    )

                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Upserted entry",
            extra={
                "owner_id": entry.owner_id,
                "category": identity.category,
                "key": entry.key,
                "version": version,
            },
        )
        stored = Entry(
            owner_id=entry.owner_id,
            category=entry.category,
            key=entry.key,
            value=entry.value,
            position=entry.position,
            version=version,
            created_at=created_at,
            updated_at=ts,
        )
        return CasResult(True, stored)

    def _check_limit(self, conn: sqlite3.Connection, owner_id: str, adding: int) -> None:
        cursor = conn.execute("SELECT COUNT(*) FROM entries WHERE owner_id = ?", (owner_id,))
        if cursor.fetchone()[0] + adding > self.max_entries_per_owner:
            raise PartitionLimitError(owner_id, self.max_entries_per_owner)

    async def reposition(
        self,
        owner_id: str,
        category: Category,
        key: str,
        old_position: int,
        new_position: int,
        expected_version: int,
    ) -> CasResult:
        return await run_blocking(
            "reposition",
            self._reposition,
            EntryIdentity(owner_id, str(category), old_position, key),
            new_position,
            expected_version,
        )

    def _reposition(
        self,
        identity: EntryIdentity,
        new_position: int,
        expected_version: int,
    ) -> CasResult:
        target = identity._replace(position=new_position)
        ts = now_ms()

        with self._connect(identity.owner_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._select(conn, identity)
                if row is None or row["version"] != expected_version:
                    conn.execute("ROLLBACK")
                    if row is None:
                        return CasResult(False, None, None)
                    return CasResult(False, _row_to_entry(row), row["version"])

                if self._select(conn, target) is not None:
                    conn.execute("ROLLBACK")
                    return CasResult(False, _row_to_entry(row), row["version"])

                conn.execute(
                    """
                    UPDATE entries SET position = ?, version = ?, updated_at = ?
                    WHERE owner_id = ? AND category = ? AND position = ? AND key = ?
                    """,
                    (new_position, expected_version + 1, ts, *identity),
                )
                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        moved = _row_to_entry(row)
        return CasResult(
            True,
            Entry(
                owner_id=moved.owner_id,
                category=moved.category,
                key=moved.key,
                value=moved.value,
                position=new_position,
                version=expected_version + 1,
                created_at=moved.created_at,
                updated_at=ts,
            ),
        )

    async def replace_category(
        self,
        owner_id: str,
        category: Category,
        new_entries: Sequence[Entry],
    ) -> list[Entry]:
        check_replacement(owner_id, category, new_entries)
        deleted = await run_blocking(
            "replace_category", self._delete_category, owner_id, str(category), len(new_entries)
        )
        # Not atomic: the category is empty until the insert below commits.
        stored = await run_blocking(
            "replace_category", self._insert_many, owner_id, str(category), new_entries
        )
        logger.debug(
            "Replaced category",
            extra={
                "owner_id": owner_id,
                "category": str(category),
                "deleted": deleted,
                "inserted": len(stored),
            },
        )
        return stored

    def _delete_category(self, owner_id: str, category: str, incoming: int) -> int:
        with self._connect(owner_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    SELECT COUNT(*) FROM entries
                    WHERE owner_id = ? AND category != ?
                    """,
                    (owner_id, category),
                )
                if cursor.fetchone()[0] + incoming > self.max_entries_per_owner:
                    raise PartitionLimitError(owner_id, self.max_entries_per_owner)

                cursor = conn.execute(
                    "DELETE FROM entries WHERE owner_id = ? AND category = ?",
                    (owner_id, category),
                )
                conn.execute("COMMIT")
                return cursor.rowcount

            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _insert_many(
        self, owner_id: str, category: str, new_entries: Sequence[Entry]
    ) -> list[Entry]:
        ts = now_ms()
        stored = []
        with self._connect(owner_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                # Rows from an overlapping replace; the last insert wins.
                conn.execute(
                    "DELETE FROM entries WHERE owner_id = ? AND category = ?",
                    (owner_id, category),
                )
                for entry in new_entries:
                    kind, bool_value, string_value, set_value = _encode_value(entry.value)
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO entries
                        (owner_id, category, position, key,
                         value_kind, bool_value, string_value, set_value,
                         version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                        """,
                        (*entry.identity, kind, bool_value, string_value, set_value, ts, ts),
                    )
                    stored.append(
                        Entry(
                            owner_id=entry.owner_id,
                            category=entry.category,
                            key=entry.key,
                            value=entry.value,
                            position=entry.position,
                            version=1,
                            created_at=ts,
                            updated_at=ts,
                        )
                    )
                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise
        return stored

    async def delete(self, owner_id: str, category: Category, position: int, key: str) -> bool:
        identity = EntryIdentity(owner_id, str(category), position, key)
        return await run_blocking("delete", self._delete, identity)

    def _delete(self, identity: EntryIdentity) -> bool:
        with self._connect(identity.owner_id) as conn:
            cursor = conn.execute(
                """
                DELETE FROM entries
                WHERE owner_id = ? AND category = ? AND position = ? AND key = ?
                """,
                tuple(identity),
            )
            return cursor.rowcount > 0

    async def delete_owner(self, owner_id: str) -> int:
        return await run_blocking("delete_owner", self._delete_owner, owner_id)

    def _delete_owner(self, owner_id: str) -> int:
        with self._connect(owner_id) as conn:
            cursor = conn.execute("DELETE FROM entries WHERE owner_id = ?", (owner_id,))
            return cursor.rowcount

    async def stats(self, owner_id: str) -> dict[str, int]:
        return await run_blocking("stats", self._stats, owner_id)

    def _stats(self, owner_id: str) -> dict[str, int]:
        with self._connect(owner_id) as conn:
            cursor = conn.execute(
                """
                SELECT category, COUNT(*) AS n FROM entries
                WHERE owner_id = ?
                GROUP BY category
                """,
                (owner_id,),
            )
            stats = {row["category"]: row["n"] for row in cursor.fetchall()}
            stats["total"] = sum(stats.values())
            return stats

    async def close(self) -> None:
        # Connections are per-operation; nothing is held open.
        self._initialized.clear()
