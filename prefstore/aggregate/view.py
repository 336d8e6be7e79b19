"""
Bulk view of one owner's preferences.

AggregateView is what the bulk endpoint returns and what the cache stores.
to_dict()/from_dict() define its JSON wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..model import EntryValue


@dataclass(frozen=True)
class SortableItem:
    """One item of a sortable list."""

    key: str
    value: str
    position: int
    version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "position": self.position,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SortableItem:
        return cls(
            key=data["key"],
            value=data["value"],
            position=data["position"],
            version=data["version"],
        )


@dataclass(frozen=True)
class OtherItem:
    """An entry whose category this version does not recognise."""

    category: str
    key: str
    value: EntryValue
    position: int
    version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "key": self.key,
            "value": self.value.to_dict(),
            "position": self.position,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OtherItem:
        return cls(
            category=data["category"],
            key=data["key"],
            value=EntryValue.from_dict(data["value"]),
            position=data["position"],
            version=data["version"],
        )


@dataclass
class AggregateView:
    """Four known sections plus "other" for one owner.

    Attributes:
        owner_id: Partition key
        toggles: Toggle name -> enabled
        preferences: Preference name -> value
        favorites: Domain -> favorite ids
        sortables: Domain -> items in display order
        other: Entries from unrecognised categories, in storage order
        built_at: When the view was assembled (Unix ms)
    """

    owner_id: str
    toggles: dict[str, bool] = field(default_factory=dict)
    preferences: dict[str, str] = field(default_factory=dict)
    favorites: dict[str, frozenset[str]] = field(default_factory=dict)
    sortables: dict[str, list[SortableItem]] = field(default_factory=dict)
    other: list[OtherItem] = field(default_factory=list)
    built_at: int = 0

    @property
    def entry_count(self) -> int:
        """Number of stored entries represented in this view."""
        return (
            len(self.toggles)
            + len(self.preferences)
            + len(self.favorites)
            + sum(len(items) for items in self.sortables.values())
            + len(self.other)
        )

    def sortable_keys(self, domain: str) -> list[str]:
        return [item.key for item in self.sortables.get(domain, [])]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            "owner_id": self.owner_id,
            "toggles": dict(self.toggles),
            "preferences": dict(self.preferences),
            "favorites": {domain: sorted(ids) for domain, ids in self.favorites.items()},
            "sortables": {
                domain: [item.to_dict() for item in items]
                for domain, items in self.sortables.items()
            },
            "other": [item.to_dict() for item in self.other],
            "built_at": self.built_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AggregateView:
        """Create from dictionary representation."""
        return cls(
            owner_id=data["owner_id"],
            toggles=dict(data.get("toggles", {})),
            preferences=dict(data.get("preferences", {})),
            favorites={
                domain: frozenset(ids) for domain, ids in data.get("favorites", {}).items()
            },
            sortables={
                domain: [SortableItem.from_dict(item) for item in items]
                for domain, items in data.get("sortables", {}).items()
            },
            other=[OtherItem.from_dict(item) for item in data.get("other", [])],
            built_at=data.get("built_at", 0),
        )
