from __future__ import annotations

import json
from pathlib import Path

import pytest

from federated_rounds.round_exchange import (
    AlreadyRegistered,
    ExchangeProfile,
    MalformedInput,
    NotAuthorized,
    NotRegistered,
    RoundExchangeContract,
    encode_x509_identity,
)


def _model(value: float = 0.5) -> dict[str, object]:
    return {"layers": [{"weights": [[value, value]], "biases": [value]}]}


def _contract(tmp_path: Path, **overrides: object) -> RoundExchangeContract:
    profile = ExchangeProfile(ledger_locator=str(tmp_path / "ledger.sqlite"), **overrides)
    return RoundExchangeContract(profile)


def test_rounds_registration_creates_state_and_genesis_record(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    participant = contract.register(encode_x509_identity("alice"))
    assert participant.name == "alice"

    state = contract.participant_state("alice")
    assert state.latest_round == 0
    assert state.token_balance == 1.0
    assert state.rounds_consumed == ()

    genesis = contract.latest_submission("alice")
    assert genesis.round == 0
    assert genesis.model_payload.leaf_count() == 0

    with pytest.raises(AlreadyRegistered):
        contract.register("alice")


def test_rounds_submission_advances_participant_clock(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    contract.register("alice")
    first = contract.submit_update("alice", _model(0.1), 2.0)
    second = contract.submit_update("alice", _model(0.2), 3.0)
    assert (first.round, second.round) == (1, 2)

    latest = contract.latest_submission("alice")
    assert latest.round == 2
    assert latest.privacy_budget == 3.0
    assert contract.participant_state("alice").token_balance == 1.0


def test_rounds_lagging_participant_jumps_past_aggregator(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    contract.register("alice")
    contract.register("bob")
    contract.submit_update("alice", _model(), 1.0)
    contract.publish_aggregate("appserver", _model(0.9), 1)
    contract.submit_update("alice", _model(), 1.0)
    contract.publish_aggregate("appserver", _model(0.8), 2)

    assert contract.participant_state("appserver").latest_round == 2
    receipt = contract.submit_update("bob", _model(), 1.0)
    assert receipt.round == 3

    # A participant level with the aggregator moves one round past it.
    assert contract.participant_state("alice").latest_round == 2
    assert contract.submit_update("alice", _model(), 1.0).round == 3


def test_rounds_aggregator_without_state_counts_as_round_zero(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    contract.register("alice")
    assert contract.submit_update("alice", _model(), 1.0).round == 1


def test_rounds_submission_errors(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    with pytest.raises(NotRegistered, match="carol"):
        contract.submit_update("carol", _model(), 1.0)
    with pytest.raises(NotAuthorized):
        contract.submit_update("appserver", _model(), 1.0)

    contract.register("alice")
    with pytest.raises(MalformedInput):
        contract.submit_update("alice", {"layers": [{"weights": [True]}]}, 1.0)
    with pytest.raises(MalformedInput):
        contract.submit_update("alice", _model(), -1.0)
    with pytest.raises(MalformedInput):
        contract.submit_update("alice", _model(), "lots")
    assert contract.participant_state("alice").latest_round == 0


def test_rounds_state_history_tracks_every_change(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    contract.register("alice")
    contract.submit_update("alice", _model(), 1.0)
    history = contract.state_history("alice")
    assert [entry.version for entry in history] == [1, 2]
    assert [entry.state.latest_round for entry in history if entry.state is not None] == [0, 1]


def test_rounds_oversized_numbers_are_malformed_input(tmp_path: Path) -> None:
    contract = _contract(tmp_path)
    contract.register("alice")
    huge_weight = json.loads('{"layers": [{"weights": [1' + "0" * 400 + "]}]}")
    with pytest.raises(MalformedInput, match="finite"):
        contract.submit_update("alice", huge_weight, 1.0)
    with pytest.raises(MalformedInput, match="finite"):
        contract.submit_update("alice", {"layers": []}, 10**400)
    assert contract.participant_state("alice").latest_round == 0
