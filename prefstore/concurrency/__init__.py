"""
Concurrency controller: per-entry optimistic locking and request idempotency.
"""

from .controller import ConcurrencyController
from .deadline import call_with_timeout
from .idempotency import (
    IdempotencyLedger,
    InMemoryIdempotencyLedger,
    SqliteIdempotencyLedger,
    WriteOutcome,
    create_ledger,
)

__all__ = [
    "ConcurrencyController",
    "call_with_timeout",
    "IdempotencyLedger",
    "InMemoryIdempotencyLedger",
    "SqliteIdempotencyLedger",
    "WriteOutcome",
    "create_ledger",
]
