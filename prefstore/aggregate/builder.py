"""
Assembles the bulk view from an owner's ordered entries.

The builder makes a single pass and dispatches on CategoryKind. Sortable
items are appended in the order the store returned them; nothing is re-sorted
here, so the store's (category, position, key) clustering is the display
order.

Invariants:
    - Every input entry lands in exactly one section
    - Unknown categories go to "other" instead of failing
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..model import CategoryKind, Entry, now_ms
from .view import AggregateView, OtherItem, SortableItem

logger = logging.getLogger(__name__)


def build_view(owner_id: str, entries: Iterable[Entry]) -> AggregateView:
    """Build the AggregateView for one owner.

    Args:
        owner_id: Owner whose entries are given
        entries: Entries in storage order

    Returns:
        Assembled view
    """
    view = AggregateView(owner_id=owner_id, built_at=now_ms())

    for entry in entries:
        kind = entry.category.kind
        if kind == CategoryKind.TOGGLEABLE:
            view.toggles[entry.key] = entry.value.data  # type: ignore[assignment]
        elif kind == CategoryKind.PREFERENCE:
            view.preferences[entry.key] = entry.value.data  # type: ignore[assignment]
        elif kind == CategoryKind.FAVORITES:
            view.favorites[entry.category.domain] = entry.value.data  # type: ignore[assignment]
        elif kind == CategoryKind.SORTABLE:
            view.sortables.setdefault(entry.category.domain, []).append(
                SortableItem(
                    key=entry.key,
                    value=entry.value.data,  # type: ignore[arg-type]
                    position=entry.position,
                    version=entry.version,
                )
            )
        else:
            view.other.append(
                OtherItem(
                    category=str(entry.category),
                    key=entry.key,
                    value=entry.value,
                    position=entry.position,
                    version=entry.version,
                )
            )

    if view.other:
        logger.debug(
            "Unrecognised categories in partition",
            extra={"owner_id": owner_id, "count": len(view.other)},
        )
    return view
