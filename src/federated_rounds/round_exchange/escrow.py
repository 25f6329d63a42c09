"""Token-gated symmetric key escrow and the pending key-request queue."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from federated_rounds.ledger import LedgerTransaction

from .config import ExchangeProfile
from .contracts import (
    KeyRequest,
    KeyRequestBatch,
    SymmetricKeyMaterial,
    canonical_json,
    require_non_empty_string,
    require_non_negative_int,
)
from .errors import AlreadyExists, InvariantViolation, MalformedInput, NotAuthorized, RoundNotFound
from .identity import IdentityResolver
from .layout import Participant, StateLayout, escrow_key, key_requests_key
from .state import ParticipantStateStore
from .tokens import TokenLedger


logger = logging.getLogger("federated_rounds.round_exchange.escrow")

TRANSIENT_PASSWORD = "password"
TRANSIENT_IV = "iv"


class KeyEscrow:
    """Per-round key material in a restricted collection, released for one token."""

    def __init__(self, tx: LedgerTransaction, profile: ExchangeProfile) -> None:
        self.tx = tx
        self.profile = profile
        self.layout = StateLayout(aggregator_name=profile.aggregator_name)
        self.identities = IdentityResolver(aggregator_name=profile.aggregator_name)
        self.states = ParticipantStateStore(tx, self.layout)
        self.tokens = TokenLedger(self.states, consumption_cost=profile.consumption_cost)

    def request_key(self, identity: str | bytes, round_number: Any) -> KeyRequestBatch:
        participant = self.identities.resolve(identity)
        target_round = require_non_negative_int(round_number, "round")
        self.states.require(participant.name)
        batch = self._load_requests().appended(KeyRequest(round=target_round, participant=participant.name))
        self.tx.put_state(key_requests_key(), canonical_json(batch.as_dict()))
        logger.info("key requested participant=%s round=%s pending=%s", participant.name, target_round, len(batch.requests))
        return batch

    def drain_requests(self, identity: str | bytes) -> KeyRequestBatch:
        """Return every pending request and clear the queue in the same transaction.

        A concurrent ``request_key`` commit invalidates this transaction's read
        of the queue, so each request is drained exactly once.
        """
        caller = self.identities.resolve(identity)
        self._require_aggregator(caller, "DrainKeyRequests")
        batch = self._load_requests()
        self.tx.put_state(key_requests_key(), canonical_json(KeyRequestBatch().as_dict()))
        logger.info("key requests drained count=%s", len(batch.requests))
        return batch

    def issue_key(self, identity: str | bytes, round_number: Any, collection: Any) -> None:
        caller = self.identities.resolve(identity)
        self._require_aggregator(caller, "IssueKey")
        target_round = require_non_negative_int(round_number, "round")
        collection_name = require_non_empty_string(collection, "collection")
        transient = self.tx.get_transient()
        material = SymmetricKeyMaterial(
            password=_transient_text(transient, TRANSIENT_PASSWORD),
            iv=_transient_text(transient, TRANSIENT_IV),
        )
        key = escrow_key(target_round)
        # Issuing writes the collection; membership gates readers only.
        existing = self.tx.get_private_data(collection_name, key, check_access=False)
        if existing is not None:
            if _decode_material(existing, target_round) == material:
                logger.info("key issue replay round=%s collection=%s", target_round, collection_name)
                return
            raise AlreadyExists(f"key material for round {target_round} in {collection_name}")
        self.tx.put_private_data(collection_name, key, canonical_json(material.as_dict()))
        logger.info("key issued round=%s collection=%s", target_round, collection_name)

    def fetch_key(self, identity: str | bytes, round_number: Any, collection: Any) -> SymmetricKeyMaterial:
        participant = self.identities.resolve(identity)
        target_round = require_non_negative_int(round_number, "round")
        collection_name = require_non_empty_string(collection, "collection")
        # The debit is rolled back with the transaction if the material is missing.
        updated = self.tokens.debit_if_available(participant.name)
        raw = self.tx.get_private_data(collection_name, escrow_key(target_round), reader=participant.name)
        if raw is None:
            raise RoundNotFound(f"key material for round {target_round} in {collection_name}")
        logger.info(
            "key released participant=%s round=%s balance=%.4f",
            participant.name,
            target_round,
            updated.token_balance,
        )
        return _decode_material(raw, target_round)

    def _load_requests(self) -> KeyRequestBatch:
        raw = self.tx.get_state(key_requests_key())
        if raw is None:
            return KeyRequestBatch()
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise InvariantViolation("pending key requests are not valid JSON") from exc
        return KeyRequestBatch.from_payload(payload)

    def _require_aggregator(self, caller: Participant, operation: str) -> None:
        if self.profile.aggregator_only_operations and not caller.is_aggregator:
            raise NotAuthorized(f"{operation} is restricted to {self.layout.aggregator_name}")


def _transient_text(transient: Mapping[str, bytes], field_name: str) -> str:
    value = transient.get(field_name)
    if not value:
        raise MalformedInput(f"transient field {field_name} is required")
    try:
        return require_non_empty_string(bytes(value).decode("utf-8"), f"transient.{field_name}")
    except UnicodeDecodeError as exc:
        raise MalformedInput(f"transient field {field_name} must be UTF-8") from exc


def _decode_material(raw: str, round_number: int) -> SymmetricKeyMaterial:
    try:
        return SymmetricKeyMaterial.from_payload(json.loads(raw))
    except (ValueError, MalformedInput) as exc:
        raise InvariantViolation(f"stored key material for round {round_number} is unreadable") from exc
