"""Round exchange flows: update submission, aggregate publication, result fetch."""

from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
from typing import Any

from federated_rounds.ledger import LedgerTransaction

from .arbiter import RoundArbiter
from .config import ExchangeProfile
from .contracts import (
    ModelPayload,
    ParticipantRound,
    ParticipantState,
    ServerRound,
    canonical_json,
    require_int,
    require_non_negative_int,
    require_privacy_budget,
)
from .errors import (
    AlreadyExists,
    AlreadyRegistered,
    InsufficientTokens,
    InvariantViolation,
    MalformedInput,
    NotAuthorized,
    RoundNotFound,
)
from .identity import IdentityResolver
from .layout import Participant, ParticipantRole, StateLayout
from .sampler import select_subset
from .state import ParticipantStateStore, StateHistoryEntry
from .tokens import TokenLedger, contribution_reward


logger = logging.getLogger("federated_rounds.round_exchange.exchange")

RESULT_DELIVERED = "DELIVERED"
RESULT_WITHHELD = "WITHHELD"

REASON_RESULT_FIRST_FETCH = "RESULT_FIRST_FETCH"
REASON_RESULT_REPLAY = "RESULT_REPLAY"
REASON_AGGREGATE_COMMITTED_NEW = "AGGREGATE_COMMITTED_NEW"
REASON_AGGREGATE_REPLAY_MATCH = "AGGREGATE_REPLAY_MATCH"

INSUFFICIENT_TOKENS_MARKER = ModelPayload.empty()


@dataclass(frozen=True)
class SubmissionReceipt:
    participant: str
    round: int
    record_key: str


@dataclass(frozen=True)
class CreditEntry:
    participant: str
    amount: float
    token_balance: float


@dataclass(frozen=True)
class PublishResult:
    round: int
    reason_code: str
    credited: tuple[CreditEntry, ...] = ()


@dataclass(frozen=True)
class ResultFetch:
    status: str
    reason_code: str
    round: int
    payload: ModelPayload
    token_balance: float

    @property
    def delivered(self) -> bool:
        return self.status == RESULT_DELIVERED


class RoundExchange:
    """Participant-facing round operations inside one ledger transaction."""

    def __init__(self, tx: LedgerTransaction, profile: ExchangeProfile) -> None:
        self.tx = tx
        self.profile = profile
        self.layout = StateLayout(aggregator_name=profile.aggregator_name)
        self.identities = IdentityResolver(aggregator_name=profile.aggregator_name)
        self.states = ParticipantStateStore(tx, self.layout)
        self.arbiter = RoundArbiter(self.states)
        self.tokens = TokenLedger(self.states, consumption_cost=profile.consumption_cost)

    def register(self, identity: str | bytes) -> Participant:
        participant = self.identities.resolve(identity)
        if self.states.get(participant.name) is not None:
            raise AlreadyRegistered(participant.name)
        # The aggregator's round-0 slot is the server round key space; no genesis there.
        genesis_key = self.layout.participant_round_key(participant, 0)
        if not participant.is_aggregator and self.tx.get_state(genesis_key) is None:
            genesis = ParticipantRound(
                participant_id=participant.name,
                role=participant.role,
                model_payload=ModelPayload.empty(),
                round=0,
                privacy_budget=0.0,
            )
            self.tx.put_state(genesis_key, canonical_json(genesis.as_dict()))
        self.states.put(
            participant.name,
            ParticipantState(latest_round=0, token_balance=self.profile.initial_balance),
        )
        logger.info("participant registered name=%s role=%s", participant.name, participant.role.value)
        return participant

    def submit_update(self, identity: str | bytes, payload: Any, privacy_budget: Any) -> SubmissionReceipt:
        participant = self.identities.resolve(identity)
        if participant.is_aggregator:
            raise NotAuthorized(f"{participant.name} publishes aggregates and cannot submit client updates")
        model = ModelPayload.from_payload(payload, "update")
        budget = require_privacy_budget(privacy_budget, "privacy_budget")
        state = self.states.require(participant.name)
        round_number = self.arbiter.next_round(participant.name)
        record_key = self.layout.participant_round_key(participant, round_number)
        if self.tx.get_state(record_key) is not None:
            raise InvariantViolation(f"round {round_number} already written for {participant.name}")
        record = ParticipantRound(
            participant_id=participant.name,
            role=participant.role,
            model_payload=model,
            round=round_number,
            privacy_budget=budget,
        )
        self.tx.put_state(record_key, canonical_json(record.as_dict()))
        self.states.put(participant.name, replace(state, latest_round=round_number))
        logger.info(
            "update accepted participant=%s round=%s privacy_budget=%s leaves=%s",
            participant.name,
            round_number,
            budget,
            model.leaf_count(),
        )
        return SubmissionReceipt(participant=participant.name, round=round_number, record_key=record_key)

    def select_participants(
        self,
        identity: str | bytes,
        count: Any,
        seed: Any,
        round_number: Any = None,
    ) -> list[ParticipantRound]:
        caller = self.identities.resolve(identity)
        self._require_aggregator(caller, "SelectParticipants")
        sample_count = require_int(count, "count")
        sample_seed = require_int(seed, "seed")
        if round_number is None:
            eligible_round = self.arbiter.aggregator_round() + 1
        else:
            eligible_round = require_non_negative_int(round_number, "round")
        selected = [
            _decode_participant_round(raw, key)
            for key, raw in select_subset(self.tx, self.layout, eligible_round, sample_count, sample_seed)
        ]
        logger.info(
            "participants selected round=%s count=%s seed=%s selected=%s",
            eligible_round,
            sample_count,
            sample_seed,
            len(selected),
        )
        return selected

    def publish_aggregate(
        self,
        identity: str | bytes,
        payload: Any,
        round_number: Any,
        count: Any = None,
        seed: Any = None,
    ) -> PublishResult:
        """Write the round's aggregate and credit the contributors it was built from.

        Contributors are re-derived with the same ``count``/``seed`` the
        aggregator passed to ``select_participants``; the seeded sampler makes
        that the same subset over an unchanged pool.
        """
        caller = self.identities.resolve(identity)
        self._require_aggregator(caller, "PublishAggregate")
        model = ModelPayload.from_payload(payload, "aggregate")
        target_round = require_non_negative_int(round_number, "round")
        if target_round < 1:
            raise MalformedInput("round must be >= 1")
        sample_count = self.profile.default_selection_count if count is None else require_int(count, "count")
        sample_seed = target_round if seed is None else require_int(seed, "seed")

        server_key = self.layout.server_round_key(target_round)
        existing_raw = self.tx.get_state(server_key)
        if existing_raw is not None:
            existing = _decode_server_round(existing_raw, server_key)
            if existing.payload == model:
                logger.info("aggregate replay round=%s publisher=%s", target_round, caller.name)
                return PublishResult(round=target_round, reason_code=REASON_AGGREGATE_REPLAY_MATCH)
            raise AlreadyExists(f"aggregate for round {target_round}")

        record = ServerRound(payload=model, round=target_round, published_by=caller.name)
        self.tx.put_state(server_key, canonical_json(record.as_dict()))
        self._advance_aggregator(target_round)

        credited: list[CreditEntry] = []
        for key, raw in select_subset(self.tx, self.layout, target_round, sample_count, sample_seed):
            contribution = _decode_participant_round(raw, key)
            if contribution.round != target_round or contribution.role is not ParticipantRole.CLIENT:
                logger.warning("skipping stale contribution key=%r round=%s", key, contribution.round)
                continue
            if self.states.get(contribution.participant_id) is None:
                logger.warning("skipping unregistered contributor participant=%s", contribution.participant_id)
                continue
            reward = contribution_reward(
                contribution.privacy_budget,
                offset=self.profile.reward_offset,
                divisor=self.profile.reward_divisor,
            )
            updated = self.tokens.credit(contribution.participant_id, reward)
            credited.append(
                CreditEntry(
                    participant=contribution.participant_id,
                    amount=reward,
                    token_balance=updated.token_balance,
                )
            )
        logger.info(
            "aggregate published round=%s publisher=%s credited=%s",
            target_round,
            caller.name,
            len(credited),
        )
        return PublishResult(
            round=target_round,
            reason_code=REASON_AGGREGATE_COMMITTED_NEW,
            credited=tuple(credited),
        )

    def fetch_result(self, identity: str | bytes, round_number: Any) -> ResultFetch:
        participant = self.identities.resolve(identity)
        target_round = require_non_negative_int(round_number, "round")
        server_key = self.layout.server_round_key(target_round)
        raw = self.tx.get_state(server_key)
        if raw is None:
            raise RoundNotFound(str(target_round))
        published = _decode_server_round(raw, server_key)
        state = self.states.require(participant.name)

        if state.has_consumed(target_round):
            return ResultFetch(
                status=RESULT_DELIVERED,
                reason_code=REASON_RESULT_REPLAY,
                round=target_round,
                payload=published.payload,
                token_balance=state.token_balance,
            )
        try:
            debited = self.tokens.debit_if_available(participant.name)
        except InsufficientTokens:
            logger.info(
                "result withheld participant=%s round=%s balance=%.4f",
                participant.name,
                target_round,
                state.token_balance,
            )
            return ResultFetch(
                status=RESULT_WITHHELD,
                reason_code=InsufficientTokens.code,
                round=target_round,
                payload=INSUFFICIENT_TOKENS_MARKER,
                token_balance=state.token_balance,
            )
        consumed = replace(debited, rounds_consumed=debited.rounds_consumed + (target_round,))
        self.states.put(participant.name, consumed)
        return ResultFetch(
            status=RESULT_DELIVERED,
            reason_code=REASON_RESULT_FIRST_FETCH,
            round=target_round,
            payload=published.payload,
            token_balance=consumed.token_balance,
        )

    def latest_submission(self, identity: str | bytes) -> ParticipantRound:
        participant = self.identities.resolve(identity)
        if participant.is_aggregator:
            raise NotAuthorized(f"{participant.name} has no client submissions")
        state = self.states.require(participant.name)
        key = self.layout.participant_round_key(participant, state.latest_round)
        raw = self.tx.get_state(key)
        if raw is None:
            raise RoundNotFound(f"{participant.name}:{state.latest_round}")
        return _decode_participant_round(raw, key)

    def participant_state(self, identity: str | bytes) -> ParticipantState:
        participant = self.identities.resolve(identity)
        return self.states.require(participant.name)

    def state_history(self, identity: str | bytes) -> list[StateHistoryEntry]:
        participant = self.identities.resolve(identity)
        self.states.require(participant.name)
        return self.states.history(participant.name)

    def _advance_aggregator(self, round_number: int) -> None:
        name = self.layout.aggregator_name
        state = self.states.get(name)
        if state is None:
            state = ParticipantState(latest_round=round_number, token_balance=self.profile.initial_balance)
        else:
            state = replace(state, latest_round=max(state.latest_round, round_number))
        self.states.put(name, state)

    def _require_aggregator(self, caller: Participant, operation: str) -> None:
        if self.profile.aggregator_only_operations and not caller.is_aggregator:
            raise NotAuthorized(f"{operation} is restricted to {self.layout.aggregator_name}")


def _decode_participant_round(raw: str, key: str) -> ParticipantRound:
    try:
        return ParticipantRound.from_payload(json.loads(raw))
    except (ValueError, MalformedInput) as exc:
        raise InvariantViolation(f"stored participant round is unreadable: {key!r}") from exc


def _decode_server_round(raw: str, key: str) -> ServerRound:
    try:
        return ServerRound.from_payload(json.loads(raw))
    except (ValueError, MalformedInput) as exc:
        raise InvariantViolation(f"stored server round is unreadable: {key!r}") from exc
