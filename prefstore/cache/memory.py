"""
In-process aggregate cache with TTL expiry.

Views are stored in their serialised dictionary form, the same shape the
Redis backend writes, so callers never share mutable state with the cache.
The clock is injectable so tests can move time forward.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from ..aggregate import AggregateView
from .base import CacheError

logger = logging.getLogger(__name__)


class InMemoryAggregateCache:
    """Dictionary-backed AggregateCache.

    Attributes:
        default_ttl: TTL in seconds applied when set() gets none
        max_entries: Owners held before the oldest insertion is evicted
        hits: Number of get() calls served from cache
        misses: Number of get() calls that fell through
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._items: dict[str, tuple[float, dict[str, Any]]] = {}
        self._pending_failure: Exception | None = None
        self.hits = 0
        self.misses = 0

    def _maybe_fail(self) -> None:
        if self._pending_failure is not None:
            exc, self._pending_failure = self._pending_failure, None
            raise exc

    async def get(self, owner_id: str) -> AggregateView | None:
        self._maybe_fail()
        item = self._items.get(owner_id)
        if item is None:
            self.misses += 1
            return None
        expires_at, data = item
        if self._clock() >= expires_at:
            del self._items[owner_id]
            self.misses += 1
            return None
        self.hits += 1
        return AggregateView.from_dict(data)

    async def set(
        self,
        owner_id: str,
        view: AggregateView,
        ttl_seconds: float | None = None,
    ) -> None:
        self._maybe_fail()
        ttl = ttl_seconds or self.default_ttl
        self._items.pop(owner_id, None)
        while len(self._items) >= self.max_entries:
            oldest = next(iter(self._items))
            del self._items[oldest]
        self._items[owner_id] = (self._clock() + ttl, view.to_dict())

    async def invalidate(self, owner_id: str) -> None:
        self._maybe_fail()
        self._items.pop(owner_id, None)

    async def close(self) -> None:
        self._items.clear()

    # Testing helpers

    def inject_failure(self, exception: Exception | None = None) -> None:
        """Make the next cache call raise (CacheError by default)."""
        self._pending_failure = exception or CacheError("Injected cache failure")

    def __contains__(self, owner_id: str) -> bool:
        item = self._items.get(owner_id)
        return item is not None and self._clock() < item[0]

    def __len__(self) -> int:
        return len(self._items)
