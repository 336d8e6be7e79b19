"""
Redis aggregate cache.

Views are written with SETEX as JSON under "<prefix><owner_id>". Redis errors
are logged and swallowed: a failed get is a miss, a failed set or invalidate
leaves at most a stale entry that expires with its TTL.
"""

from __future__ import annotations

import json
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..aggregate import AggregateView

logger = logging.getLogger(__name__)


class RedisAggregateCache:
    """Redis implementation of AggregateCache."""

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "prefstore:agg:",
        default_ttl: float = 300.0,
    ) -> None:
        """Initialize Redis cache.

        Args:
            redis_client: Async Redis client
            key_prefix: Prefix for all keys
            default_ttl: Default TTL in seconds
        """
        self._redis = redis_client
        self._prefix = key_prefix
        self._default_ttl = default_ttl

    @classmethod
    def from_url(
        cls,
        url: str,
        key_prefix: str = "prefstore:agg:",
        default_ttl: float = 300.0,
    ) -> RedisAggregateCache:
        """Build a cache around a client created from a redis:// URL."""
        return cls(redis.from_url(url), key_prefix=key_prefix, default_ttl=default_ttl)

    def _key(self, owner_id: str) -> str:
        return f"{self._prefix}{owner_id}"

    async def get(self, owner_id: str) -> AggregateView | None:
        try:
            data = await self._redis.get(self._key(owner_id))
            if data is None:
                return None
            return AggregateView.from_dict(json.loads(data))

        except (RedisError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Error getting cached view for {owner_id}: {e}")
            return None

    async def set(
        self,
        owner_id: str,
        view: AggregateView,
        ttl_seconds: float | None = None,
    ) -> None:
        ttl = max(1, int(ttl_seconds or self._default_ttl))
        try:
            await self._redis.setex(self._key(owner_id), ttl, json.dumps(view.to_dict()))

        except (RedisError, TypeError) as e:
            logger.error(f"Error caching view for {owner_id}: {e}")

    async def invalidate(self, owner_id: str) -> None:
        try:
            await self._redis.delete(self._key(owner_id))

        except RedisError as e:
            logger.error(f"Error invalidating cached view for {owner_id}: {e}")

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as e:
            logger.warning(f"Error closing Redis client: {e}")
