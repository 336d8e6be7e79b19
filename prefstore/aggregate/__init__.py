"""
Aggregation layer: raw partition rows to the four-section bulk view.
"""

from .builder import build_view
from .view import AggregateView, OtherItem, SortableItem

__all__ = ["AggregateView", "OtherItem", "SortableItem", "build_view"]
