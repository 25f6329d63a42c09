"""Deterministic key layout for round-scoped and per-participant records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from federated_rounds.ledger import CompositeKeyError, create_composite_key, partial_key_range

from .errors import MalformedInput


DEFAULT_AGGREGATOR_NAME = "appserver"

STATE_OBJECT_TYPE = "ParticipantState"
KEY_REQUESTS_OBJECT_TYPE = "KeyRequests"
ROUND_WIDTH = 12


class ParticipantRole(str, Enum):
    CLIENT = "Client"
    SERVER = "Server"


@dataclass(frozen=True)
class Participant:
    name: str
    role: ParticipantRole

    @property
    def is_aggregator(self) -> bool:
        return self.role is ParticipantRole.SERVER


def round_attribute(round_number: int) -> str:
    # Zero-padded so a prefix scan over rounds sorts numerically.
    if isinstance(round_number, bool) or not isinstance(round_number, int):
        raise MalformedInput("round must be an integer")
    if round_number < 0 or round_number >= 10**ROUND_WIDTH:
        raise MalformedInput(f"round out of range: {round_number}")
    return f"{round_number:0{ROUND_WIDTH}d}"


def round_key(role: ParticipantRole, name: str, round_number: int) -> str:
    return _composite(role.value, [round_attribute(round_number), name])


def round_prefix(role: ParticipantRole, round_number: int) -> tuple[str, str]:
    return partial_key_range(role.value, [round_attribute(round_number)])


def current_state_key(name: str) -> str:
    return _composite(STATE_OBJECT_TYPE, [name])


def key_requests_key() -> str:
    return _composite(KEY_REQUESTS_OBJECT_TYPE, [])


def escrow_key(round_number: int) -> str:
    return round_attribute(round_number)


@dataclass(frozen=True)
class StateLayout:
    aggregator_name: str = DEFAULT_AGGREGATOR_NAME

    @property
    def aggregator(self) -> Participant:
        return Participant(name=self.aggregator_name, role=ParticipantRole.SERVER)

    def participant_round_key(self, participant: Participant, round_number: int) -> str:
        return round_key(participant.role, participant.name, round_number)

    def server_round_key(self, round_number: int) -> str:
        return round_key(ParticipantRole.SERVER, self.aggregator_name, round_number)

    def client_round_range(self, round_number: int) -> tuple[str, str]:
        return round_prefix(ParticipantRole.CLIENT, round_number)


def _composite(object_type: str, attributes: list[str]) -> str:
    try:
        return create_composite_key(object_type, attributes)
    except CompositeKeyError as exc:
        raise MalformedInput(str(exc)) from exc
