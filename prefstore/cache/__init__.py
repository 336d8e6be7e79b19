"""
Cache layer: read-through, write-invalidate cache of whole AggregateViews.

Backends:
- Redis (shared across service instances)
- In-memory (single process, tests)
- Null (caching disabled)
"""

from .base import AggregateCache, CacheError, NullAggregateCache, create_cache
from .memory import InMemoryAggregateCache
from .redis import RedisAggregateCache

__all__ = [
    "AggregateCache",
    "CacheError",
    "NullAggregateCache",
    "create_cache",
    "InMemoryAggregateCache",
    "RedisAggregateCache",
]
