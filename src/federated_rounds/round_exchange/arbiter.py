"""Round arbitration between participant and aggregator clocks."""

from __future__ import annotations

from .state import ParticipantStateStore


class RoundArbiter:
    def __init__(self, states: ParticipantStateStore) -> None:
        self.states = states

    def aggregator_round(self) -> int:
        # An aggregator that has never registered or published sits at round 0.
        state = self.states.get(self.states.layout.aggregator_name)
        return state.latest_round if state is not None else 0

    def next_round(self, name: str) -> int:
        """Return ``max(participant latest, aggregator latest) + 1``, read fresh."""
        participant_round = self.states.require(name).latest_round
        return max(participant_round, self.aggregator_round()) + 1
