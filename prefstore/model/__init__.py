"""
Record model for prefstore.

Every stored preference is an Entry: a tagged value placed in an owner's
partition under (category, position, key).
"""

from .entry import (
    FAVORITES_KEY,
    NOT_EXISTS,
    UNORDERED,
    Category,
    CategoryKind,
    Entry,
    EntryIdentity,
    EntryValue,
    ValueKind,
    now_ms,
)

__all__ = [
    "Category",
    "CategoryKind",
    "Entry",
    "EntryIdentity",
    "EntryValue",
    "ValueKind",
    "FAVORITES_KEY",
    "NOT_EXISTS",
    "UNORDERED",
    "now_ms",
]
