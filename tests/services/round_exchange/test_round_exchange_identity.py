from __future__ import annotations

import base64

import pytest

from federated_rounds.round_exchange import (
    IdentityResolver,
    MalformedInput,
    ParticipantRole,
    common_name_from_identity,
    encode_x509_identity,
)


def test_identity_x509_blob_resolves_to_first_subject_value() -> None:
    blob = encode_x509_identity("alice", org_unit="org1.client", issuer="CN=ca.org1.example.com,O=org1")
    assert common_name_from_identity(blob) == "alice"
    assert common_name_from_identity(blob.encode("ascii")) == "alice"


def test_identity_plain_name_is_accepted_as_is() -> None:
    assert common_name_from_identity("alice") == "alice"
    assert common_name_from_identity("  bob ") == "bob"


def test_identity_base64_without_x509_prefix_is_treated_as_plain_name() -> None:
    raw = base64.b64encode(b"not-an-identity").decode("ascii")
    assert common_name_from_identity(raw) == raw


def test_identity_rejects_empty_or_unusable_values() -> None:
    with pytest.raises(MalformedInput, match="non-empty"):
        common_name_from_identity("   ")
    no_value = base64.b64encode(b"x509::client::CN=ca").decode("ascii")
    with pytest.raises(MalformedInput, match="no attribute value"):
        common_name_from_identity(no_value)
    empty_value = base64.b64encode(b"x509::CN=,OU=client::CN=ca").decode("ascii")
    with pytest.raises(MalformedInput, match="empty participant name"):
        common_name_from_identity(empty_value)


def test_identity_resolver_tags_only_the_configured_aggregator_as_server() -> None:
    resolver = IdentityResolver(aggregator_name="appserver")
    server = resolver.resolve(encode_x509_identity("appserver", org_unit="admin"))
    client = resolver.resolve("alice")
    assert server.role is ParticipantRole.SERVER
    assert server.is_aggregator is True
    assert client.role is ParticipantRole.CLIENT
    assert client.is_aggregator is False

    custom = IdentityResolver(aggregator_name="hub").resolve("appserver")
    assert custom.role is ParticipantRole.CLIENT
