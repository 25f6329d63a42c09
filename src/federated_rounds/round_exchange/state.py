"""Read/write access to per-participant state records inside one transaction."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any

from federated_rounds.ledger import LedgerTransaction

from .contracts import ParticipantState, canonical_json
from .errors import InvariantViolation, NotRegistered
from .layout import StateLayout, current_state_key


@dataclass(frozen=True)
class StateHistoryEntry:
    tx_id: str
    version: int
    committed_at_utc: str
    state: ParticipantState | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "version": self.version,
            "committed_at_utc": self.committed_at_utc,
            "state": None if self.state is None else self.state.as_dict(),
        }


class ParticipantStateStore:
    def __init__(self, tx: LedgerTransaction, layout: StateLayout) -> None:
        self.tx = tx
        self.layout = layout

    def get(self, name: str) -> ParticipantState | None:
        raw = self.tx.get_state(current_state_key(name))
        if raw is None:
            return None
        return _decode_state(raw, name)

    def require(self, name: str) -> ParticipantState:
        state = self.get(name)
        if state is None:
            raise NotRegistered(name)
        return state

    def put(self, name: str, state: ParticipantState) -> None:
        self.tx.put_state(current_state_key(name), canonical_json(state.as_dict()))

    def history(self, name: str) -> list[StateHistoryEntry]:
        entries: list[StateHistoryEntry] = []
        for item in self.tx.get_history_for_key(current_state_key(name)):
            entries.append(
                StateHistoryEntry(
                    tx_id=item.tx_id,
                    version=item.version,
                    committed_at_utc=item.committed_at_utc,
                    state=None if item.value is None else _decode_state(item.value, name),
                )
            )
        return entries


def _decode_state(raw: str, name: str) -> ParticipantState:
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise InvariantViolation(f"participant state for {name} is not valid JSON") from exc
    return ParticipantState.from_payload(payload)
