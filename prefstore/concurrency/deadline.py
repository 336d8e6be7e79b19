"""
Deadline wrapper for store and cache calls.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from ..errors import StoreTimeoutError

T = TypeVar("T")


async def call_with_timeout(operation: str, awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await `awaitable`, raising StoreTimeoutError once `timeout` elapses.

    A timed-out call is reported, never assumed to have succeeded. The
    underlying write may still land; callers re-read before retrying
    unconditional writes.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreTimeoutError(operation, timeout) from e
