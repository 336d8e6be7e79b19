"""
Gapped position assignment for sortable categories.

Positions are spaced at a fixed stride so that moving one item only rewrites
that item: the moved entry takes the integer midpoint of its new neighbours.
When two neighbours are adjacent integers the gap is exhausted and the whole
category has to be re-strided before the move can happen.

Invariants:
    - Every assigned position is > UNORDERED (0)
    - A new position lies strictly between its neighbours
    - Equal positions order by key; the tie-break is part of the contract

How to change safely:
    - Changing DEFAULT_STRIDE only affects newly seeded or renumbered lists
    - order_key must stay identical to the storage ORDER BY clause
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..errors import RenumberRequiredError
from ..model import UNORDERED, Entry

logger = logging.getLogger(__name__)

DEFAULT_STRIDE = 1000


def order_key(entry: Entry) -> tuple[str, int, str]:
    """Sort key matching the store's clustering order."""
    return (str(entry.category), entry.position, entry.key)


def seed_positions(count: int, stride: int = DEFAULT_STRIDE) -> list[int]:
    """Positions for a fresh list of `count` items: stride, 2*stride, ..."""
    if stride < 2:
        raise ValueError(f"stride must be at least 2, got {stride}")
    return [stride * (i + 1) for i in range(count)]


def restride(keys: Sequence[str], stride: int = DEFAULT_STRIDE) -> list[tuple[str, int]]:
    """Re-space keys (already in display order) at a fresh stride."""
    return list(zip(keys, seed_positions(len(keys), stride)))


def position_between(
    before: int | None,
    after: int | None,
    stride: int = DEFAULT_STRIDE,
) -> int:
    """Pick a position strictly between two neighbours.

    Args:
        before: Position of the preceding item, None when moving to the front
        after: Position of the following item, None when moving to the end
        stride: Gap used when appending past the last item

    Returns:
        New position

    Raises:
        RenumberRequiredError: If no integer lies strictly between the neighbours
    """
    low = UNORDERED if before is None else before
    if after is None:
        return low + stride
    if after < low:
        raise ValueError(f"Neighbours out of order: {low} > {after}")
    if after - low < 2:
        raise RenumberRequiredError(low, after)
    return (low + after) // 2


def plan_move(
    items: Sequence[tuple[int, str]],
    key: str,
    after_key: str | None = None,
    stride: int = DEFAULT_STRIDE,
) -> int:
    """Compute the new position for moving `key` directly after `after_key`.

    Args:
        items: (position, key) pairs in current display order
        key: Item to move
        after_key: Item that should precede it, or None for the front
        stride: Gap used when appending past the last item

    Returns:
        New position for `key`

    Raises:
        KeyError: If key or after_key is not in the list
        ValueError: If key and after_key are the same item
        RenumberRequiredError: If the target gap is exhausted
    """
    if key == after_key:
        raise ValueError(f"Cannot move {key!r} after itself")
    if not any(k == key for _, k in items):
        raise KeyError(key)

    others = [(pos, k) for pos, k in items if k != key]

    if after_key is None:
        before = None
        after = others[0][0] if others else None
    else:
        index = next((i for i, (_, k) in enumerate(others) if k == after_key), None)
        if index is None:
            raise KeyError(after_key)
        before = others[index][0]
        after = others[index + 1][0] if index + 1 < len(others) else None

    position = position_between(before, after, stride)
    logger.debug(
        "Planned move",
        extra={"key": key, "after_key": after_key, "position": position},
    )
    return position
