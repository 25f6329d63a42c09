from __future__ import annotations

import json
from pathlib import Path

import pytest

from federated_rounds.round_exchange import ExchangeProfile, RoundExchangeContract, encode_x509_identity
from federated_rounds.round_exchange.cli import main

MODEL = '{"layers": [{"weights": [[0.5, 0.5]], "biases": [0.5]}]}'


def _run(capsys: pytest.CaptureFixture[str], ledger: Path, *argv: str) -> object:
    main(["--ledger", str(ledger), *argv])
    return json.loads(capsys.readouterr().out)


def test_cli_runs_round_through_invoke(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ledger = tmp_path / "ledger.sqlite"
    alice = encode_x509_identity("alice")
    assert _run(capsys, ledger, "--identity", alice, "Register") == {"name": "alice", "role": "Client"}
    assert _run(capsys, ledger, "--identity", alice, "SubmitUpdate", MODEL, "10") == {
        "participant": "alice",
        "round": 1,
    }
    selected = _run(capsys, ledger, "--identity", "appserver", "SelectParticipants", "1", "42")
    assert selected == [json.loads(MODEL)]
    published = _run(capsys, ledger, "--identity", "appserver", "PublishAggregate", MODEL, "1", "1", "42")
    assert published["credited"] == [{"participant": "alice", "amount": 0.75, "token_balance": 1.75}]

    fetched = _run(capsys, ledger, "--identity", alice, "FetchResult", "1")
    assert fetched["status"] == "DELIVERED"
    assert fetched["payload"] == json.loads(MODEL)
    state = _run(capsys, ledger, "--identity", alice, "GetParticipantState")
    assert state == {"latest_round": 1, "token_balance": 0.75, "rounds_consumed": [1]}


def test_cli_passes_transient_key_material(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ledger = tmp_path / "ledger.sqlite"
    _run(capsys, ledger, "--identity", "alice", "Register")
    _run(capsys, ledger, "--identity", "alice", "RequestKey", "1")
    assert _run(capsys, ledger, "--identity", "appserver", "DrainKeyRequests") == {
        "rounds": [1],
        "names": ["alice"],
    }
    assert (
        _run(
            capsys,
            ledger,
            "--identity",
            "appserver",
            "--transient",
            "password=hunter2",
            "--transient",
            "iv=0011",
            "IssueKey",
            "1",
        )
        is None
    )
    assert _run(capsys, ledger, "--identity", "alice", "FetchKey", "1") == {"password": "hunter2", "iv": "0011"}


def test_cli_reports_reason_coded_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ledger = tmp_path / "ledger.sqlite"
    with pytest.raises(SystemExit) as excinfo:
        main(["--ledger", str(ledger), "--identity", "bob", "FetchResult", "1"])
    assert excinfo.value.code == 1
    assert json.loads(capsys.readouterr().out) == {"error": "ROUND_NOT_FOUND", "detail": "1"}

    with pytest.raises(SystemExit):
        main(["--ledger", str(ledger), "--identity", "bob", "Teleport"])
    assert json.loads(capsys.readouterr().out)["error"] == "MALFORMED_INPUT"


def test_contract_invoke_checks_arity(tmp_path: Path) -> None:
    contract = RoundExchangeContract(ExchangeProfile(ledger_locator=str(tmp_path / "ledger.sqlite")))
    with pytest.raises(ValueError, match="expects 1 arguments"):
        contract.invoke("FetchResult", [], identity="alice")
    contract.invoke("Register", [], identity="alice")
    history = contract.invoke("GetStateHistory", [], identity="alice")
    assert [entry["version"] for entry in history] == [1]
    assert history[0]["state"]["token_balance"] == 1.0
