"""
Unit tests for the record model.

Tests cover:
- EntryValue kind validation
- Category parsing and formatting
- Entry position and value-kind rules
- Dictionary serialization
"""

import pytest

from prefstore.errors import InvalidValueKindError
from prefstore.model import (
    UNORDERED,
    Category,
    CategoryKind,
    Entry,
    EntryValue,
    ValueKind,
)


class TestEntryValue:
    """Tests for the tagged value union."""

    def test_bool_value(self):
        """Boolean constructor sets kind."""
        value = EntryValue.of_bool(True)
        assert value.kind == ValueKind.BOOLEAN
        assert value.data is True

    def test_set_value_is_frozen(self):
        """Set constructor dedupes into a frozenset."""
        value = EntryValue.of_set(["b", "a", "b"])
        assert value.data == frozenset({"a", "b"})

    def test_mismatched_data_rejected(self):
        """Data that disagrees with kind raises."""
        with pytest.raises(InvalidValueKindError):
            EntryValue(ValueKind.BOOLEAN, "yes")

    def test_string_is_not_bool(self):
        """A bool is not accepted as a string."""
        with pytest.raises(InvalidValueKindError):
            EntryValue.of_string(True)

    def test_set_members_must_be_strings(self):
        """Non-string set members raise."""
        with pytest.raises(InvalidValueKindError):
            EntryValue.of_set([1, 2])

    def test_set_serializes_sorted(self):
        """Sets become sorted lists in dict form."""
        value = EntryValue.of_set({"z", "a", "m"})
        assert value.to_dict() == {"kind": "str_set", "data": ["a", "m", "z"]}

    def test_from_dict_unknown_kind(self):
        """Unknown kind in stored data raises."""
        with pytest.raises(InvalidValueKindError):
            EntryValue.from_dict({"kind": "int", "data": 3})


class TestCategory:
    """Tests for category parsing."""

    def test_parse_plain(self):
        """Plain categories parse without a domain."""
        assert Category.parse("toggleable") == Category.toggleable()
        assert Category.parse("preference") == Category.preference()

    def test_parse_domain(self):
        """Domain categories keep their suffix."""
        cat = Category.parse("sortable:dashboard")
        assert cat.kind == CategoryKind.SORTABLE
        assert cat.domain == "dashboard"
        assert str(cat) == "sortable:dashboard"

    def test_parse_unknown_keeps_raw(self):
        """Unknown prefixes become UNRECOGNIZED and round-trip."""
        cat = Category.parse("pinned:tabs")
        assert cat.kind == CategoryKind.UNRECOGNIZED
        assert str(cat) == "pinned:tabs"

    def test_domain_category_without_domain(self):
        """'favorites:' with no domain is unrecognized."""
        assert Category.parse("favorites:").kind == CategoryKind.UNRECOGNIZED

    def test_invalid_domain(self):
        """Empty or colon domains are rejected by constructors."""
        with pytest.raises(ValueError):
            Category.sortable("")
        with pytest.raises(ValueError):
            Category.favorites("a:b")

    def test_expected_value_kinds(self):
        """Each family declares its value kind."""
        assert Category.toggleable().expected_value_kind == ValueKind.BOOLEAN
        assert Category.favorites("x").expected_value_kind == ValueKind.STRING_SET
        assert Category.parse("mystery").expected_value_kind is None


class TestEntry:
    """Tests for Entry invariants."""

    def test_new_entry_version_one(self):
        """New entries start at version 1 with timestamps."""
        entry = Entry.new("u1", Category.toggleable(), "dark", EntryValue.of_bool(True))
        assert entry.version == 1
        assert entry.position == UNORDERED
        assert entry.created_at == entry.updated_at > 0

    def test_sortable_needs_position(self):
        """Sortable entries must have a positive position."""
        with pytest.raises(ValueError):
            Entry.new("u1", Category.sortable("d"), "a", EntryValue.of_string("A"))

    def test_unordered_rejects_position(self):
        """Non-sortable entries must be unordered."""
        with pytest.raises(ValueError):
            Entry.new(
                "u1", Category.preference(), "lang", EntryValue.of_string("en"), position=5
            )

    def test_value_kind_must_match_category(self):
        """A string in a toggle category raises."""
        with pytest.raises(InvalidValueKindError):
            Entry.new("u1", Category.toggleable(), "dark", EntryValue.of_string("on"))

    def test_unrecognized_accepts_any_kind(self):
        """Unknown categories are not value-checked."""
        entry = Entry.new("u1", Category.parse("mystery"), "k", EntryValue.of_bool(False))
        assert entry.value.data is False

    def test_empty_key_rejected(self):
        """Keys must be non-empty."""
        with pytest.raises(ValueError):
            Entry.new("u1", Category.toggleable(), "", EntryValue.of_bool(True))

    def test_identity(self):
        """Identity is (owner, category, position, key)."""
        entry = Entry.new(
            "u1", Category.sortable("d"), "a", EntryValue.of_string("A"), position=1000
        )
        assert tuple(entry.identity) == ("u1", "sortable:d", 1000, "a")

    def test_dict_round_trip(self):
        """to_dict/from_dict preserve all fields."""
        entry = Entry.new("u1", Category.favorites("shows"), "_set", EntryValue.of_set(["x"]))
        assert Entry.from_dict(entry.to_dict()) == entry
