"""Tests for query key normalization and prefix matching."""

import pytest

from zenquery import normalize_key
from zenquery.keys import prefix_matcher


class TestNormalizeKey:
    """Tests for normalize_key."""

    def test_string_passthrough(self) -> None:
        """Test that plain strings are used as-is."""
        assert normalize_key("todos") == "todos"
        assert normalize_key("user:1") == "user:1"

    def test_sequence(self) -> None:
        """Test that sequences render with quoted strings."""
        assert normalize_key(["user", 1]) == "['user', 1]"
        assert normalize_key(("user", [1, 2])) == "['user', [1, 2]]"

    def test_list_and_tuple_equal(self) -> None:
        """Test that lists and tuples with equal parts normalize the same."""
        assert normalize_key(["a", 1, True]) == normalize_key(("a", 1, True))

    def test_primitives(self) -> None:
        """Test primitive parts inside sequences."""
        assert normalize_key([None, True, False, 1.5]) == "[null, true, false, 1.5]"

    def test_string_vs_number_distinct(self) -> None:
        """Test that '1' and 1 produce different keys."""
        assert normalize_key(["id", "1"]) != normalize_key(["id", 1])

    def test_quotes_escaped(self) -> None:
        """Test that quotes inside strings cannot forge a different key."""
        assert normalize_key(["a', 'b"]) != normalize_key(["a", "b"])

    def test_unsupported_part(self) -> None:
        """Test that unsupported types raise TypeError."""
        with pytest.raises(TypeError):
            normalize_key([object()])  # type: ignore[list-item]


class TestPrefixMatcher:
    """Tests for prefix_matcher."""

    def test_string_prefix(self) -> None:
        """Test plain string prefixes."""
        matches = prefix_matcher("user:")
        assert matches("user:1")
        assert not matches("post:1")

    def test_sequence_prefix_matches_whole_parts(self) -> None:
        """Test that ['user'] matches ['user', 1] but not ['users']."""
        matches = prefix_matcher(["user"])
        assert matches(normalize_key(["user"]))
        assert matches(normalize_key(["user", 1]))
        assert matches(normalize_key(["user", 1, "posts"]))
        assert not matches(normalize_key(["users"]))
        assert not matches(normalize_key(["users", 1]))

    def test_nested_prefix(self) -> None:
        """Test multi-part prefixes."""
        matches = prefix_matcher(["user", 1])
        assert matches(normalize_key(["user", 1, "posts"]))
        assert not matches(normalize_key(["user", 10]))

    def test_empty_sequence_matches_all_sequences(self) -> None:
        """Test that an empty sequence prefix matches every sequence key."""
        matches = prefix_matcher([])
        assert matches(normalize_key(["a"]))
        assert not matches("plain")
