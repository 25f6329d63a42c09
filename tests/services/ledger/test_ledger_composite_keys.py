from __future__ import annotations

import pytest

from federated_rounds.ledger import (
    COMPOSITE_KEY_NAMESPACE,
    CompositeKeyError,
    create_composite_key,
    partial_key_range,
    split_composite_key,
)


def test_composite_key_round_trips_object_type_and_attributes() -> None:
    key = create_composite_key("Client", ["000000000001", "alice"])
    assert key.startswith(COMPOSITE_KEY_NAMESPACE)
    assert split_composite_key(key) == ("Client", ["000000000001", "alice"])


def test_composite_key_components_cannot_be_shifted_across_boundaries() -> None:
    assert create_composite_key("a", ["bc"]) != create_composite_key("ab", ["c"])


def test_composite_key_rejects_reserved_delimiters() -> None:
    with pytest.raises(CompositeKeyError, match="reserved delimiter"):
        create_composite_key("Client", [f"ali{COMPOSITE_KEY_NAMESPACE}ce"])
    with pytest.raises(CompositeKeyError, match="reserved delimiter"):
        create_composite_key("Client", ["alice\U0010ffff"])
    with pytest.raises(CompositeKeyError, match="non-empty"):
        create_composite_key("", ["alice"])


def test_partial_key_range_covers_only_matching_prefix() -> None:
    start, end = partial_key_range("Client", ["000000000001"])
    inside = create_composite_key("Client", ["000000000001", "zed"])
    outside_round = create_composite_key("Client", ["000000000002", "alice"])
    outside_role = create_composite_key("Server", ["000000000001", "appserver"])
    assert start <= inside < end
    assert not (start <= outside_round < end)
    assert not (start <= outside_role < end)


def test_split_composite_key_rejects_plain_strings() -> None:
    with pytest.raises(CompositeKeyError, match="not a composite key"):
        split_composite_key("alice")
