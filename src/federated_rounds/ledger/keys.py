"""Composite key construction and range bounds for the ledger keyspace."""

from __future__ import annotations

from typing import Iterable


COMPOSITE_KEY_NAMESPACE = "\x1f"
MAX_UNICODE_RUNE = "\U0010ffff"


class CompositeKeyError(ValueError):
    """Raised when a composite key component cannot be encoded unambiguously."""


def create_composite_key(object_type: str, attributes: Iterable[str]) -> str:
    """Join an object type and attributes into one delimited, prefix-safe key.

    Every component is terminated by the namespace delimiter, so a key built
    from ``("a", ["bc"])`` can never equal one built from ``("ab", ["c"])``.
    """
    _validate_component(object_type, "object_type", allow_empty=False)
    key = COMPOSITE_KEY_NAMESPACE + object_type + COMPOSITE_KEY_NAMESPACE
    for attribute in attributes:
        _validate_component(attribute, "attribute", allow_empty=True)
        key += attribute + COMPOSITE_KEY_NAMESPACE
    return key


def split_composite_key(key: str) -> tuple[str, list[str]]:
    if not key.startswith(COMPOSITE_KEY_NAMESPACE) or not key.endswith(COMPOSITE_KEY_NAMESPACE):
        raise CompositeKeyError(f"not a composite key: {key!r}")
    parts = key[1:-1].split(COMPOSITE_KEY_NAMESPACE)
    return parts[0], parts[1:]


def partial_key_range(object_type: str, attributes: Iterable[str]) -> tuple[str, str]:
    """Return the half-open ``[start, end)`` key range matching a composite prefix."""
    start = create_composite_key(object_type, attributes)
    return start, start + MAX_UNICODE_RUNE


def _validate_component(value: str, field_name: str, *, allow_empty: bool) -> None:
    if not isinstance(value, str):
        raise CompositeKeyError(f"{field_name} must be a string")
    if not value and not allow_empty:
        raise CompositeKeyError(f"{field_name} must be a non-empty string")
    if COMPOSITE_KEY_NAMESPACE in value or MAX_UNICODE_RUNE in value:
        raise CompositeKeyError(f"{field_name} contains a reserved delimiter: {value!r}")
