"""
Core record types for prefstore.

This module defines the single stored unit and its parts:
- ValueKind / EntryValue: Tagged union over boolean, string and string-set
- CategoryKind / Category: Closed category enumeration plus domain suffix
- Entry: One stored record, identified by EntryIdentity

Invariants:
    - EntryValue.data always agrees with EntryValue.kind
    - Sortable categories carry a position > 0; all others carry UNORDERED
    - Versions start at 1; NOT_EXISTS (0) means "expect no stored entry"
    - Unknown category prefixes parse to UNRECOGNIZED and keep their raw text

How to change safely:
    - Add a new CategoryKind together with its entry in EXPECTED_VALUE_KIND
    - Never rename the category prefixes; they are persisted verbatim
    - Keep to_dict() output stable; caches and idempotency records store it

Example:
    >>> cat = Category.sortable("dashboard")
    >>> entry = Entry.new("user-1", cat, "widget-a", EntryValue.of_string("Widget A"),
    ...                   position=1000)
    >>> str(entry.category)
    'sortable:dashboard'
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, NamedTuple

from ..errors import InvalidValueKindError

# Position carried by every entry outside sortable categories.
UNORDERED = 0

# expected_version meaning "the entry must not exist yet".
NOT_EXISTS = 0

# Key of the single set-valued entry in a favorites category.
FAVORITES_KEY = "_set"


def now_ms() -> int:
    """Current wall clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class ValueKind(Enum):
    """Discriminator for the populated value field."""

    BOOLEAN = "bool"
    STRING = "str"
    STRING_SET = "str_set"

    @classmethod
    def from_str(cls, value: str) -> ValueKind:
        """Convert string representation to ValueKind.

        Raises:
            InvalidValueKindError: If value is not a known kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise InvalidValueKindError(
            f"Invalid value kind '{value}'. Valid kinds: {valid}", actual=value
        )


@dataclass(frozen=True)
class EntryValue:
    """Tagged union holding exactly one of bool, str or frozenset[str].

    Attributes:
        kind: Which variant is populated
        data: The value itself
    """

    kind: ValueKind
    data: bool | str | frozenset[str]

    def __post_init__(self) -> None:
        if self.kind == ValueKind.BOOLEAN:
            ok = isinstance(self.data, bool)
        elif self.kind == ValueKind.STRING:
            ok = isinstance(self.data, str)
        else:
            ok = isinstance(self.data, frozenset) and all(isinstance(v, str) for v in self.data)
        if not ok:
            raise InvalidValueKindError(
                f"Value {self.data!r} is not a valid {self.kind.value}",
                expected_kind=self.kind.value,
                actual=type(self.data).__name__,
            )

    @classmethod
    def of_bool(cls, value: bool) -> EntryValue:
        return cls(ValueKind.BOOLEAN, value)

    @classmethod
    def of_string(cls, value: str) -> EntryValue:
        return cls(ValueKind.STRING, value)

    @classmethod
    def of_set(cls, values: Iterable[str]) -> EntryValue:
        return cls(ValueKind.STRING_SET, frozenset(values))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary (sets become sorted lists)."""
        data: Any = sorted(self.data) if self.kind == ValueKind.STRING_SET else self.data
        return {"kind": self.kind.value, "data": data}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntryValue:
        """Create from dictionary representation."""
        kind = ValueKind.from_str(data["kind"])
        raw = data["data"]
        if kind == ValueKind.STRING_SET:
            if not isinstance(raw, list):
                raise InvalidValueKindError(
                    "str_set value must be a list", expected_kind=kind.value,
                    actual=type(raw).__name__,
                )
            raw = frozenset(raw)
        return cls(kind, raw)


class CategoryKind(Enum):
    """Closed set of category families.

    The value is the persisted prefix; domain-scoped families are
    written as "<prefix>:<domain>".
    """

    TOGGLEABLE = "toggleable"
    PREFERENCE = "preference"
    FAVORITES = "favorites"
    SORTABLE = "sortable"
    UNRECOGNIZED = "unrecognized"

    @property
    def has_domain(self) -> bool:
        return self in (CategoryKind.FAVORITES, CategoryKind.SORTABLE)


EXPECTED_VALUE_KIND: dict[CategoryKind, ValueKind | None] = {
    CategoryKind.TOGGLEABLE: ValueKind.BOOLEAN,
    CategoryKind.PREFERENCE: ValueKind.STRING,
    CategoryKind.FAVORITES: ValueKind.STRING_SET,
    CategoryKind.SORTABLE: ValueKind.STRING,
    CategoryKind.UNRECOGNIZED: None,
}


@dataclass(frozen=True)
class Category:
    """Parsed category discriminator.

    Attributes:
        kind: Category family
        domain: Domain suffix for favorites/sortable, empty otherwise
        raw: Original text, kept verbatim for UNRECOGNIZED categories
    """

    kind: CategoryKind
    domain: str = ""
    raw: str = ""

    @classmethod
    def parse(cls, text: str) -> Category:
        """Parse a persisted category string.

        Unknown prefixes and malformed domain categories come back as
        UNRECOGNIZED so they still round-trip through storage.
        """
        prefix, sep, domain = text.partition(":")
        if not sep:
            if text == CategoryKind.TOGGLEABLE.value:
                return cls(CategoryKind.TOGGLEABLE)
            if text == CategoryKind.PREFERENCE.value:
                return cls(CategoryKind.PREFERENCE)
        elif domain:
            if prefix == CategoryKind.FAVORITES.value:
                return cls(CategoryKind.FAVORITES, domain)
            if prefix == CategoryKind.SORTABLE.value:
                return cls(CategoryKind.SORTABLE, domain)
        return cls(CategoryKind.UNRECOGNIZED, raw=text)

    @classmethod
    def toggleable(cls) -> Category:
        return cls(CategoryKind.TOGGLEABLE)

    @classmethod
    def preference(cls) -> Category:
        return cls(CategoryKind.PREFERENCE)

    @classmethod
    def favorites(cls, domain: str) -> Category:
        if not domain or ":" in domain:
            raise ValueError(f"Invalid favorites domain: {domain!r}")
        return cls(CategoryKind.FAVORITES, domain)

    @classmethod
    def sortable(cls, domain: str) -> Category:
        if not domain or ":" in domain:
            raise ValueError(f"Invalid sortable domain: {domain!r}")
        return cls(CategoryKind.SORTABLE, domain)

    @property
    def is_sortable(self) -> bool:
        return self.kind == CategoryKind.SORTABLE

    @property
    def expected_value_kind(self) -> ValueKind | None:
        return EXPECTED_VALUE_KIND[self.kind]

    def __str__(self) -> str:
        if self.kind == CategoryKind.UNRECOGNIZED:
            return self.raw
        if self.kind.has_domain:
            return f"{self.kind.value}:{self.domain}"
        return self.kind.value


class EntryIdentity(NamedTuple):
    """The only stable identity of an entry."""

    owner_id: str
    category: str
    position: int
    key: str


@dataclass(frozen=True)
class Entry:
    """One stored preference record.

    Attributes:
        owner_id: Partition key
        category: Parsed category
        key: Identifier within the category
        value: Tagged value
        position: Ordering key for sortable entries, UNORDERED otherwise
        version: Optimistic concurrency version (1 on creation)
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    owner_id: str
    category: Category
    key: str
    value: EntryValue
    position: int = UNORDERED
    version: int = 1
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self) -> None:
        if not self.owner_id:
            raise ValueError("owner_id must not be empty")
        if not self.key:
            raise ValueError("key must not be empty")
        if self.category.is_sortable:
            if self.position <= UNORDERED:
                raise ValueError(
                    f"Sortable entry {self.key!r} needs a positive position, got {self.position}"
                )
        elif self.position != UNORDERED:
            raise ValueError(
                f"Entry {self.key!r} in {self.category} must be unordered, got {self.position}"
            )
        expected = self.category.expected_value_kind
        if expected is not None and self.value.kind != expected:
            raise InvalidValueKindError(
                f"Category {self.category} holds {expected.value} values, "
                f"got {self.value.kind.value}",
                expected_kind=expected.value,
                actual=self.value.kind.value,
            )

    @classmethod
    def new(
        cls,
        owner_id: str,
        category: Category,
        key: str,
        value: EntryValue,
        position: int = UNORDERED,
    ) -> Entry:
        """Build a not-yet-stored entry stamped with the current time."""
        ts = now_ms()
        return cls(
            owner_id=owner_id,
            category=category,
            key=key,
            value=value,
            position=position,
            version=1,
            created_at=ts,
            updated_at=ts,
        )

    @property
    def identity(self) -> EntryIdentity:
        return EntryIdentity(self.owner_id, str(self.category), self.position, self.key)

    def with_value(self, value: EntryValue) -> Entry:
        return replace(self, value=value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "owner_id": self.owner_id,
            "category": str(self.category),
            "key": self.key,
            "value": self.value.to_dict(),
            "position": self.position,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entry:
        """Create from dictionary."""
        return cls(
            owner_id=data["owner_id"],
            category=Category.parse(data["category"]),
            key=data["key"],
            value=EntryValue.from_dict(data["value"]),
            position=data.get("position", UNORDERED),
            version=data.get("version", 1),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
        )
