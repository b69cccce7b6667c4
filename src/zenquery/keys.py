"""Query key normalization and matching."""

from collections.abc import Callable, Sequence

from zenquery.types import QueryKey

_QUOTE_ESCAPES = {"\\": "\\\\", "'": "\\'"}


def _quote(part: str) -> str:
    for char, escaped in _QUOTE_ESCAPES.items():
        part = part.replace(char, escaped)
    return f"'{part}'"


def _normalize_part(part: QueryKey) -> str:
    if part is None:
        return "null"
    if isinstance(part, bool):
        return "true" if part else "false"
    if isinstance(part, str):
        return _quote(part)
    if isinstance(part, (int, float)):
        return str(part)
    if isinstance(part, Sequence):
        return normalize_key(part)
    raise TypeError(f"Unsupported query key part: {type(part).__name__}")


def normalize_key(key: QueryKey) -> str:
    """Normalize a query key into a stable string.

    Strings pass through unchanged, so ``"user:1"`` indexes as ``user:1``.
    Sequences render as ``['user', 1]``; lists and tuples with equal parts
    normalize to the same string.

    Example:
        normalize_key("todos")            # "todos"
        normalize_key(["user", 1])        # "['user', 1]"
        normalize_key(("user", [1, 2]))   # "['user', [1, 2]]"
    """
    if isinstance(key, str):
        return key
    if key is None or isinstance(key, (bool, int, float)):
        return _normalize_part(key)
    if isinstance(key, Sequence):
        return "[" + ", ".join(_normalize_part(part) for part in key) + "]"
    raise TypeError(f"Unsupported query key: {type(key).__name__}")


def has_prefix(key: str, prefix: str) -> bool:
    """Check if a normalized key starts with prefix (for bulk invalidation)."""
    return key.startswith(prefix)


def prefix_matcher(prefix: QueryKey) -> Callable[[str], bool]:
    """Build a predicate matching normalized keys under a prefix.

    Sequence prefixes match keys whose parts begin with the same parts,
    i.e. ``['user']`` matches ``['user', 1]`` but not ``['users']``.
    """
    if isinstance(prefix, str):
        return lambda key: has_prefix(key, prefix)
    if not isinstance(prefix, Sequence):
        primitive = normalize_key(prefix)
        return lambda key: has_prefix(key, primitive)

    if isinstance(prefix, Sequence) and len(prefix) == 0:
        return lambda key: key.startswith("[")

    normalized = normalize_key(prefix)
    open_prefix = normalized[:-1]  # drop the closing bracket
    return lambda key: key == normalized or (
        key.startswith(open_prefix) and key[len(open_prefix) : len(open_prefix) + 2] == ", "
    )
