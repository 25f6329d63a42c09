"""Caller identity resolution: opaque identity blob to a role-tagged participant."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from .errors import MalformedInput
from .layout import DEFAULT_AGGREGATOR_NAME, Participant, ParticipantRole


X509_PREFIX = "x509::"


def common_name_from_identity(identity: str | bytes) -> str:
    """Extract the leading subject RDN value from a base64 ``x509::`` identity.

    ``x509::CN=alice,OU=client::CN=ca.org1`` resolves to ``alice``. A plain
    name that is not base64 for an ``x509::`` blob is returned as-is.
    """
    raw = identity.decode("utf-8", errors="strict") if isinstance(identity, bytes) else str(identity or "")
    raw = raw.strip()
    if not raw:
        raise MalformedInput("identity must be a non-empty string")
    decoded = _decode_x509_identity(raw)
    if decoded is None:
        return _validate_name(raw)
    subject = decoded[len(X509_PREFIX) :].split("::", 1)[0]
    first_rdn = subject.split(",", 1)[0]
    if "=" not in first_rdn:
        raise MalformedInput("identity subject has no attribute value")
    return _validate_name(first_rdn.rsplit("=", 1)[1])


@dataclass(frozen=True)
class IdentityResolver:
    aggregator_name: str = DEFAULT_AGGREGATOR_NAME

    def resolve(self, identity: str | bytes) -> Participant:
        name = common_name_from_identity(identity)
        role = ParticipantRole.SERVER if name == self.aggregator_name else ParticipantRole.CLIENT
        return Participant(name=name, role=role)


def encode_x509_identity(common_name: str, *, org_unit: str = "client", issuer: str = "CN=ca") -> str:
    subject = f"CN={common_name},OU={org_unit}"
    return base64.b64encode(f"{X509_PREFIX}{subject}::{issuer}".encode("utf-8")).decode("ascii")


def _decode_x509_identity(raw: str) -> str | None:
    try:
        decoded = base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not decoded.startswith(X509_PREFIX):
        return None
    return decoded


def _validate_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise MalformedInput("identity resolves to an empty participant name")
    if any(ord(ch) < 0x20 for ch in name):
        raise MalformedInput("participant name contains control characters")
    return name
