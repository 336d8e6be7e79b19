"""
Base protocol for the aggregate cache.

The cache holds whole AggregateViews keyed by owner_id. It owns no
authoritative data: on a miss, eviction or crash the next read falls through
to the store.

Invariants:
    - Entries expire after a bounded TTL
    - invalidate() is called after every successful write to the owner
    - A cache failure never fails the caller's operation

How to change safely:
    - Serialise through AggregateView.to_dict() so backends agree on format
    - New backends must implement the AggregateCache protocol
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..aggregate import AggregateView

if TYPE_CHECKING:
    from ..config import CacheConfig


class CacheError(Exception):
    """Base exception for cache backend failures."""

    pass


@runtime_checkable
class AggregateCache(Protocol):
    """Protocol for read-through, write-invalidate aggregate caches.

    Example:
        >>> cache = InMemoryAggregateCache(default_ttl=300)
        >>> await cache.set("user-1", view)
        >>> await cache.get("user-1")
    """

    @abstractmethod
    async def get(self, owner_id: str) -> AggregateView | None:
        """Cached view, or None on miss or expiry."""
        ...

    @abstractmethod
    async def set(
        self,
        owner_id: str,
        view: AggregateView,
        ttl_seconds: float | None = None,
    ) -> None:
        """Store a view with a bounded TTL (backend default when None)."""
        ...

    @abstractmethod
    async def invalidate(self, owner_id: str) -> None:
        """Drop the owner's cached view."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...


class NullAggregateCache:
    """Cache that never holds anything. Every read goes to the store."""

    async def get(self, owner_id: str) -> AggregateView | None:
        return None

    async def set(
        self,
        owner_id: str,
        view: AggregateView,
        ttl_seconds: float | None = None,
    ) -> None:
        pass

    async def invalidate(self, owner_id: str) -> None:
        pass

    async def close(self) -> None:
        pass


def create_cache(config: CacheConfig) -> AggregateCache:
    """Factory function to create an aggregate cache from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import CacheBackend
    from .memory import InMemoryAggregateCache
    from .redis import RedisAggregateCache

    if config.backend == CacheBackend.MEMORY:
        return InMemoryAggregateCache(
            default_ttl=config.ttl_seconds,
            max_entries=config.max_entries,
        )
    elif config.backend == CacheBackend.REDIS:
        return RedisAggregateCache.from_url(
            config.redis_url,
            key_prefix=config.key_prefix,
            default_ttl=config.ttl_seconds,
        )
    elif config.backend == CacheBackend.NONE:
        return NullAggregateCache()
    else:
        raise ValueError(f"Unsupported cache backend: {config.backend}")
