"""
Idempotency ledger for mutating requests.

A client may tag a write with an idempotency token. The ledger maps
(owner_id, token) to the WriteOutcome the first execution produced, for a
bounded TTL (24 hours by default). It is deliberately separate from the
aggregate cache: cache entries can vanish at any time, ledger entries must
survive until they expire.

Invariants:
    - Only successful outcomes are recorded
    - The first recorded outcome for a live token wins
    - Expired records are ignored on lookup and removed by purge_expired()

How to change safely:
    - Keep WriteOutcome.to_dict() stable; stored records are read back with it
    - Shortening the TTL narrows the window in which retries are deduplicated

Table schema (SQLite backend):
    applied_writes:
        - owner_id TEXT
        - token TEXT
        - operation TEXT
        - outcome_json TEXT
        - recorded_at INTEGER (Unix ms)
        - expires_at INTEGER (Unix ms)
        - PRIMARY KEY (owner_id, token)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..model import now_ms
from ..store.sqlite import open_connection, run_blocking

if TYPE_CHECKING:
    from ..config import IdempotencyConfig

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class WriteOutcome:
    """Result of a mutating service call.

    Attributes:
        operation: Name of the service operation
        owner_id: Partition key
        category: Category written
        key: Entry key written (None for category-wide operations)
        new_version: Version after the write, when a single entry changed
        position: Sortable position after a move
        count: Entries affected by bulk operations
        replayed: True when returned from the ledger instead of executed
    """

    operation: str
    owner_id: str
    category: str
    key: str | None = None
    new_version: int | None = None
    position: int | None = None
    count: int | None = None
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "owner_id": self.owner_id,
            "category": self.category,
            "key": self.key,
            "new_version": self.new_version,
            "position": self.position,
            "count": self.count,
            "replayed": self.replayed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WriteOutcome:
        return cls(
            operation=data["operation"],
            owner_id=data["owner_id"],
            category=data["category"],
            key=data.get("key"),
            new_version=data.get("new_version"),
            position=data.get("position"),
            count=data.get("count"),
            replayed=data.get("replayed", False),
        )


@runtime_checkable
class IdempotencyLedger(Protocol):
    """Protocol for token -> outcome storage with expiry."""

    @abstractmethod
    async def lookup(self, owner_id: str, token: str) -> WriteOutcome | None:
        """Recorded outcome for a live token, or None."""
        ...

    @abstractmethod
    async def record(
        self,
        owner_id: str,
        token: str,
        outcome: WriteOutcome,
        ttl_seconds: float | None = None,
    ) -> None:
        """Remember the outcome for `ttl_seconds` (ledger default when None)."""
        ...

    @abstractmethod
    async def purge_expired(self) -> int:
        """Remove expired records. Returns the number removed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class InMemoryIdempotencyLedger:
    """Dictionary-backed ledger for tests and single-process use."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._records: dict[tuple[str, str], tuple[int, WriteOutcome]] = {}

    async def lookup(self, owner_id: str, token: str) -> WriteOutcome | None:
        item = self._records.get((owner_id, token))
        if item is None:
            return None
        expires_at, outcome = item
        if self._clock() >= expires_at:
            del self._records[(owner_id, token)]
            return None
        return outcome

    async def record(
        self,
        owner_id: str,
        token: str,
        outcome: WriteOutcome,
        ttl_seconds: float | None = None,
    ) -> None:
        now = self._clock()
        existing = self._records.get((owner_id, token))
        if existing is not None and existing[0] > now:
            return
        ttl_ms = int((ttl_seconds or self.default_ttl) * 1000)
        self._records[(owner_id, token)] = (now + ttl_ms, outcome)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._records.items() if expires_at <= now]
        for k in expired:
            del self._records[k]
        return len(expired)

    async def close(self) -> None:
        self._records.clear()


class SqliteIdempotencyLedger:
    """Ledger persisted in its own SQLite file under the data directory."""

    def __init__(
        self,
        data_dir: str,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.db_path = Path(data_dir) / "idempotency.db"
        self.default_ttl = default_ttl
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self._schema_ready = False

    def _connect(self):
        return open_connection(self.db_path, self.busy_timeout_ms, self.wal_mode)

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS applied_writes (
                owner_id TEXT NOT NULL,
                token TEXT NOT NULL,
                operation TEXT NOT NULL,
                outcome_json TEXT NOT NULL,
                recorded_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                PRIMARY KEY (owner_id, token)
            );

            CREATE INDEX IF NOT EXISTS idx_applied_writes_expiry
                ON applied_writes(expires_at);
        """)
        self._schema_ready = True

    async def lookup(self, owner_id: str, token: str) -> WriteOutcome | None:
        return await run_blocking("idempotency_lookup", self._lookup, owner_id, token)

    def _lookup(self, owner_id: str, token: str) -> WriteOutcome | None:
        with self._connect() as conn:
            self._ensure_schema(conn)
            cursor = conn.execute(
                """
                SELECT outcome_json FROM applied_writes
                WHERE owner_id = ? AND token = ? AND expires_at > ?
                """,
                (owner_id, token, self._clock()),
            )
            row = cursor.fetchone()
            return WriteOutcome.from_dict(json.loads(row[0])) if row else None

    async def record(
        self,
        owner_id: str,
        token: str,
        outcome: WriteOutcome,
        ttl_seconds: float | None = None,
    ) -> None:
        ttl_ms = int((ttl_seconds or self.default_ttl) * 1000)
        await run_blocking("idempotency_record", self._record, owner_id, token, outcome, ttl_ms)

    def _record(self, owner_id: str, token: str, outcome: WriteOutcome, ttl_ms: int) -> None:
        now = self._clock()
        with self._connect() as conn:
            self._ensure_schema(conn)
            # An expired record may be overwritten; a live one is kept.
            conn.execute(
                """
                INSERT INTO applied_writes
                    (owner_id, token, operation, outcome_json, recorded_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner_id, token) DO UPDATE SET
                    operation = excluded.operation,
                    outcome_json = excluded.outcome_json,
                    recorded_at = excluded.recorded_at,
                    expires_at = excluded.expires_at
                WHERE applied_writes.expires_at <= excluded.recorded_at
                """,
                (
                    owner_id,
                    token,
                    outcome.operation,
                    json.dumps(outcome.to_dict()),
                    now,
                    now + ttl_ms,
                ),
            )

    async def purge_expired(self) -> int:
        return await run_blocking("idempotency_purge", self._purge_expired)

    def _purge_expired(self) -> int:
        with self._connect() as conn:
            self._ensure_schema(conn)
            cursor = conn.execute(
                "DELETE FROM applied_writes WHERE expires_at <= ?", (self._clock(),)
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Purged {removed} expired idempotency records")
        return removed

    async def close(self) -> None:
        self._schema_ready = False


def create_ledger(config: IdempotencyConfig, data_dir: str) -> IdempotencyLedger:
    """Factory function to create an idempotency ledger from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import LedgerBackend

    if config.backend == LedgerBackend.MEMORY:
        return InMemoryIdempotencyLedger(default_ttl=config.ttl_seconds)
    elif config.backend == LedgerBackend.SQLITE:
        return SqliteIdempotencyLedger(data_dir, default_ttl=config.ttl_seconds)
    else:
        raise ValueError(f"Unsupported idempotency backend: {config.backend}")
