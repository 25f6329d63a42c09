"""External interface: one ledger transaction per exchange call."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Sequence

from federated_rounds.ledger import LedgerError, LedgerStore, ledger_transaction

from .config import ExchangeProfile
from .contracts import ParticipantRound, ParticipantState, SymmetricKeyMaterial
from .errors import MalformedInput, RoundExchangeError, reason_code
from .escrow import TRANSIENT_IV, TRANSIENT_PASSWORD, KeyEscrow
from .exchange import PublishResult, ResultFetch, RoundExchange, SubmissionReceipt
from .layout import Participant
from .state import StateHistoryEntry


logger = logging.getLogger("federated_rounds.round_exchange.contract")


class RoundExchangeContract:
    """Binds an exchange profile to a ledger store and runs each call atomically.

    A call that raises leaves no mutation behind: the transaction is discarded
    and nothing reaches the store.
    """

    def __init__(self, profile: ExchangeProfile, store: LedgerStore | None = None) -> None:
        self.profile = profile
        self.store = store or LedgerStore(
            profile.ledger_locator,
            collection_members=profile.collection_members,
        )

    def register(self, identity: str | bytes) -> Participant:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).register(identity)

    def submit_update(self, identity: str | bytes, payload: Any, privacy_budget: Any) -> SubmissionReceipt:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).submit_update(identity, payload, privacy_budget)

    def select_participants(
        self,
        identity: str | bytes,
        count: Any,
        seed: Any,
        round_number: Any = None,
    ) -> list[ParticipantRound]:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).select_participants(identity, count, seed, round_number)

    def publish_aggregate(
        self,
        identity: str | bytes,
        payload: Any,
        round_number: Any,
        count: Any = None,
        seed: Any = None,
    ) -> PublishResult:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).publish_aggregate(identity, payload, round_number, count, seed)

    def fetch_result(self, identity: str | bytes, round_number: Any) -> ResultFetch:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).fetch_result(identity, round_number)

    def request_key(self, identity: str | bytes, round_number: Any) -> None:
        with ledger_transaction(self.store) as tx:
            KeyEscrow(tx, self.profile).request_key(identity, round_number)

    def drain_key_requests(self, identity: str | bytes) -> dict[str, list[Any]]:
        with ledger_transaction(self.store) as tx:
            batch = KeyEscrow(tx, self.profile).drain_requests(identity)
        return {"rounds": batch.rounds, "names": batch.names}

    def issue_key(
        self,
        identity: str | bytes,
        round_number: Any,
        collection: str | None = None,
        *,
        password: str | bytes,
        iv: str | bytes,
    ) -> None:
        transient = {TRANSIENT_PASSWORD: _as_bytes(password), TRANSIENT_IV: _as_bytes(iv)}
        self._issue_key(identity, round_number, collection, transient)

    def fetch_key(
        self,
        identity: str | bytes,
        round_number: Any,
        collection: str | None = None,
    ) -> SymmetricKeyMaterial:
        with ledger_transaction(self.store) as tx:
            return KeyEscrow(tx, self.profile).fetch_key(
                identity,
                round_number,
                collection or self.profile.default_key_collection,
            )

    def latest_submission(self, identity: str | bytes) -> ParticipantRound:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).latest_submission(identity)

    def participant_state(self, identity: str | bytes) -> ParticipantState:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).participant_state(identity)

    def state_history(self, identity: str | bytes) -> list[StateHistoryEntry]:
        with ledger_transaction(self.store) as tx:
            return RoundExchange(tx, self.profile).state_history(identity)

    def invoke(
        self,
        function: str,
        args: Sequence[Any] = (),
        *,
        identity: str | bytes,
        transient: Mapping[str, bytes] | None = None,
    ) -> Any:
        """Dispatch a named call and return a JSON-ready result."""
        handler = self._handlers().get(function)
        if handler is None:
            raise MalformedInput(f"unknown function {function!r}")
        try:
            return handler(identity, list(args), dict(transient or {}))
        except (RoundExchangeError, LedgerError) as exc:
            logger.info("invoke rejected function=%s reason=%s", function, reason_code(exc))
            raise

    def _handlers(self) -> dict[str, Callable[[str | bytes, list[Any], dict[str, bytes]], Any]]:
        return {
            "Register": self._invoke_register,
            "SubmitUpdate": self._invoke_submit_update,
            "SelectParticipants": self._invoke_select_participants,
            "PublishAggregate": self._invoke_publish_aggregate,
            "FetchResult": self._invoke_fetch_result,
            "RequestKey": self._invoke_request_key,
            "DrainKeyRequests": self._invoke_drain_key_requests,
            "IssueKey": self._invoke_issue_key,
            "FetchKey": self._invoke_fetch_key,
            "GetLatestSubmission": self._invoke_latest_submission,
            "GetParticipantState": self._invoke_participant_state,
            "GetStateHistory": self._invoke_state_history,
        }

    def _invoke_register(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("Register", args, 0)
        participant = self.register(identity)
        return {"name": participant.name, "role": participant.role.value}

    def _invoke_submit_update(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("SubmitUpdate", args, 2)
        receipt = self.submit_update(identity, args[0], args[1])
        return {"participant": receipt.participant, "round": receipt.round}

    def _invoke_select_participants(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("SelectParticipants", args, 2, 3)
        selected = self.select_participants(identity, *args)
        return [item.model_payload.as_dict() for item in selected]

    def _invoke_publish_aggregate(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("PublishAggregate", args, 2, 4)
        result = self.publish_aggregate(identity, *args)
        return {
            "round": result.round,
            "reason_code": result.reason_code,
            "credited": [
                {"participant": item.participant, "amount": item.amount, "token_balance": item.token_balance}
                for item in result.credited
            ],
        }

    def _invoke_fetch_result(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("FetchResult", args, 1)
        result = self.fetch_result(identity, args[0])
        return {
            "status": result.status,
            "reason_code": result.reason_code,
            "round": result.round,
            "payload": result.payload.as_dict(),
        }

    def _invoke_request_key(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("RequestKey", args, 1)
        self.request_key(identity, args[0])
        return None

    def _invoke_drain_key_requests(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("DrainKeyRequests", args, 0)
        return self.drain_key_requests(identity)

    def _invoke_issue_key(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("IssueKey", args, 1, 2)
        collection = args[1] if len(args) > 1 else None
        self._issue_key(identity, args[0], collection, transient)
        return None

    def _invoke_fetch_key(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("FetchKey", args, 1, 2)
        return self.fetch_key(identity, *args).as_dict()

    def _invoke_latest_submission(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("GetLatestSubmission", args, 0)
        return self.latest_submission(identity).as_dict()

    def _invoke_participant_state(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("GetParticipantState", args, 0)
        return self.participant_state(identity).as_dict()

    def _invoke_state_history(self, identity: str | bytes, args: list[Any], transient: dict[str, bytes]) -> Any:
        _require_arity("GetStateHistory", args, 0)
        return [entry.as_dict() for entry in self.state_history(identity)]

    def _issue_key(
        self,
        identity: str | bytes,
        round_number: Any,
        collection: str | None,
        transient: Mapping[str, bytes],
    ) -> None:
        with ledger_transaction(self.store, transient=transient) as tx:
            KeyEscrow(tx, self.profile).issue_key(
                identity,
                round_number,
                collection or self.profile.default_key_collection,
            )


def _require_arity(function: str, args: list[Any], minimum: int, maximum: int | None = None) -> None:
    upper = minimum if maximum is None else maximum
    if not (minimum <= len(args) <= upper):
        expected = str(minimum) if minimum == upper else f"{minimum}..{upper}"
        raise MalformedInput(f"{function} expects {expected} arguments, got {len(args)}")


def _as_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")
