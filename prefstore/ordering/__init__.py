"""
Ordering engine for sortable categories.
"""

from .positions import (
    DEFAULT_STRIDE,
    order_key,
    plan_move,
    position_between,
    restride,
    seed_positions,
)

__all__ = [
    "DEFAULT_STRIDE",
    "order_key",
    "plan_move",
    "position_between",
    "restride",
    "seed_positions",
]
