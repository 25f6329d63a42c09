"""Round exchange record contracts and the model tensor value."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import math
from typing import Any, Mapping, Union

from .errors import InvariantViolation, MalformedInput
from .layout import ParticipantRole


@dataclass(frozen=True)
class TensorScalar:
    value: float

    def as_json(self) -> float:
        return self.value

    def leaf_count(self) -> int:
        return 1


@dataclass(frozen=True)
class TensorSequence:
    items: tuple["TensorValue", ...] = ()

    def as_json(self) -> list[Any]:
        return [item.as_json() for item in self.items]

    def leaf_count(self) -> int:
        return sum(item.leaf_count() for item in self.items)


TensorValue = Union[TensorScalar, TensorSequence]


def tensor_from_json(value: Any, field_name: str) -> TensorValue:
    """Build a tensor from nested lists of numbers, rejecting anything else."""
    if isinstance(value, bool):
        raise MalformedInput(f"{field_name} must contain numbers, not booleans")
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError as exc:
            raise MalformedInput(f"{field_name} must contain finite numbers") from exc
        if not math.isfinite(number):
            raise MalformedInput(f"{field_name} must contain finite numbers")
        return TensorScalar(number)
    if isinstance(value, (list, tuple)):
        return TensorSequence(
            tuple(tensor_from_json(item, f"{field_name}[{idx}]") for idx, item in enumerate(value))
        )
    raise MalformedInput(f"{field_name} must be a number or a list of tensors")


@dataclass(frozen=True)
class ModelLayer:
    weights: TensorValue | None = None
    biases: TensorValue | None = None

    @classmethod
    def from_payload(cls, payload: Any, field_name: str) -> "ModelLayer":
        mapped = _as_mapping(payload, field_name)
        weights_raw = mapped.get("weights")
        biases_raw = mapped.get("biases")
        return cls(
            weights=None if weights_raw is None else tensor_from_json(weights_raw, f"{field_name}.weights"),
            biases=None if biases_raw is None else tensor_from_json(biases_raw, f"{field_name}.biases"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "weights": None if self.weights is None else self.weights.as_json(),
            "biases": None if self.biases is None else self.biases.as_json(),
        }


@dataclass(frozen=True)
class ModelPayload:
    """Opaque model blob: an ordered list of layers of nested tensors."""

    layers: tuple[ModelLayer, ...]

    @classmethod
    def empty(cls) -> "ModelPayload":
        return cls(layers=(ModelLayer(),))

    @classmethod
    def from_payload(cls, payload: Any, field_name: str = "model") -> "ModelPayload":
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise MalformedInput(f"{field_name} must be valid JSON") from exc
        mapped = _as_mapping(payload, field_name)
        layers_raw = mapped.get("layers")
        if not isinstance(layers_raw, list):
            raise MalformedInput(f"{field_name}.layers must be a list")
        return cls(
            layers=tuple(
                ModelLayer.from_payload(item, f"{field_name}.layers[{idx}]") for idx, item in enumerate(layers_raw)
            )
        )

    def as_dict(self) -> dict[str, Any]:
        return {"layers": [layer.as_dict() for layer in self.layers]}

    def leaf_count(self) -> int:
        total = 0
        for layer in self.layers:
            for tensor in (layer.weights, layer.biases):
                if tensor is not None:
                    total += tensor.leaf_count()
        return total


@dataclass(frozen=True)
class ParticipantRound:
    participant_id: str
    role: ParticipantRole
    model_payload: ModelPayload
    round: int
    privacy_budget: float

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ParticipantRound":
        mapped = _as_mapping(payload, "participant_round")
        return cls(
            participant_id=require_non_empty_string(mapped.get("participant_id"), "participant_round.participant_id"),
            role=_require_role(mapped.get("role"), "participant_round.role"),
            model_payload=ModelPayload.from_payload(mapped.get("model_payload"), "participant_round.model_payload"),
            round=require_non_negative_int(mapped.get("round"), "participant_round.round"),
            privacy_budget=require_privacy_budget(mapped.get("privacy_budget"), "participant_round.privacy_budget"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "role": self.role.value,
            "model_payload": self.model_payload.as_dict(),
            "round": self.round,
            "privacy_budget": self.privacy_budget,
        }


@dataclass(frozen=True)
class ServerRound:
    payload: ModelPayload
    round: int
    published_by: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ServerRound":
        mapped = _as_mapping(payload, "server_round")
        return cls(
            payload=ModelPayload.from_payload(mapped.get("payload"), "server_round.payload"),
            round=require_non_negative_int(mapped.get("round"), "server_round.round"),
            published_by=require_non_empty_string(mapped.get("published_by"), "server_round.published_by"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "payload": self.payload.as_dict(),
            "round": self.round,
            "published_by": self.published_by,
        }


@dataclass(frozen=True)
class ParticipantState:
    latest_round: int
    token_balance: float
    rounds_consumed: tuple[int, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ParticipantState":
        mapped = _as_mapping(payload, "participant_state")
        consumed_raw = mapped.get("rounds_consumed") or []
        if not isinstance(consumed_raw, list):
            raise MalformedInput("participant_state.rounds_consumed must be a list")
        consumed = tuple(
            require_non_negative_int(item, "participant_state.rounds_consumed[]") for item in consumed_raw
        )
        if len(set(consumed)) != len(consumed):
            raise InvariantViolation("participant_state.rounds_consumed holds a round more than once")
        balance = _require_finite_float(mapped.get("token_balance"), "participant_state.token_balance")
        if balance < 0:
            raise InvariantViolation("participant_state.token_balance is negative")
        return cls(
            latest_round=require_non_negative_int(mapped.get("latest_round"), "participant_state.latest_round"),
            token_balance=balance,
            rounds_consumed=consumed,
        )

    def has_consumed(self, round_number: int) -> bool:
        return round_number in self.rounds_consumed

    def as_dict(self) -> dict[str, Any]:
        return {
            "latest_round": self.latest_round,
            "token_balance": self.token_balance,
            "rounds_consumed": list(self.rounds_consumed),
        }


@dataclass(frozen=True)
class KeyRequest:
    round: int
    participant: str

    def as_dict(self) -> dict[str, Any]:
        return {"round": self.round, "participant": self.participant}


@dataclass(frozen=True)
class KeyRequestBatch:
    requests: tuple[KeyRequest, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "KeyRequestBatch":
        mapped = _as_mapping(payload, "key_requests")
        if "requests" in mapped:
            items = mapped.get("requests") or []
            if not isinstance(items, list):
                raise MalformedInput("key_requests.requests must be a list")
            return cls(
                requests=tuple(
                    KeyRequest(
                        round=require_non_negative_int(item.get("round"), "key_requests.requests[].round"),
                        participant=require_non_empty_string(
                            item.get("participant"), "key_requests.requests[].participant"
                        ),
                    )
                    for item in (_as_mapping(entry, "key_requests.requests[]") for entry in items)
                )
            )
        # Parallel-array layout written by earlier deployments.
        rounds = mapped.get("round") or []
        names = mapped.get("clientID") or []
        if not isinstance(rounds, list) or not isinstance(names, list):
            raise InvariantViolation("key request sequences must be lists")
        if len(rounds) != len(names):
            raise InvariantViolation(
                f"key request sequences are misaligned: rounds={len(rounds)} names={len(names)}"
            )
        return cls(
            requests=tuple(
                KeyRequest(
                    round=require_non_negative_int(round_raw, "key_requests.round[]"),
                    participant=require_non_empty_string(name_raw, "key_requests.clientID[]"),
                )
                for round_raw, name_raw in zip(rounds, names)
            )
        )

    def appended(self, request: KeyRequest) -> "KeyRequestBatch":
        return KeyRequestBatch(requests=self.requests + (request,))

    @property
    def rounds(self) -> list[int]:
        return [item.round for item in self.requests]

    @property
    def names(self) -> list[str]:
        return [item.participant for item in self.requests]

    def as_dict(self) -> dict[str, Any]:
        return {"requests": [item.as_dict() for item in self.requests]}


@dataclass(frozen=True)
class SymmetricKeyMaterial:
    password: str = field(repr=False)
    iv: str = field(repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SymmetricKeyMaterial":
        mapped = _as_mapping(payload, "symmetric_key")
        return cls(
            password=require_non_empty_string(mapped.get("password"), "symmetric_key.password"),
            iv=require_non_empty_string(mapped.get("iv"), "symmetric_key.iv"),
        )

    def as_dict(self) -> dict[str, str]:
        return {"password": self.password, "iv": self.iv}


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def require_non_empty_string(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise MalformedInput(f"{field_name} must be a non-empty string")
    return text


def require_non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or value is None:
        raise MalformedInput(f"{field_name} must be an integer >= 0")
    if isinstance(value, float) and not value.is_integer():
        raise MalformedInput(f"{field_name} must be an integer >= 0")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedInput(f"{field_name} must be an integer >= 0") from exc
    if parsed < 0:
        raise MalformedInput(f"{field_name} must be an integer >= 0")
    return parsed


def require_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or value is None:
        raise MalformedInput(f"{field_name} must be an integer")
    if isinstance(value, float) and not value.is_integer():
        raise MalformedInput(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedInput(f"{field_name} must be an integer") from exc


def require_privacy_budget(value: Any, field_name: str) -> float:
    budget = _require_finite_float(value, field_name)
    if budget < 0:
        raise MalformedInput(f"{field_name} must be >= 0")
    return budget


def _require_finite_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or value is None:
        raise MalformedInput(f"{field_name} must be a finite number")
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedInput(f"{field_name} must be a finite number") from exc
    if not math.isfinite(parsed):
        raise MalformedInput(f"{field_name} must be a finite number")
    return parsed


def _require_role(value: Any, field_name: str) -> ParticipantRole:
    try:
        return ParticipantRole(str(value or ""))
    except ValueError as exc:
        raise MalformedInput(f"{field_name} must be one of {[item.value for item in ParticipantRole]}") from exc


def _as_mapping(payload: Any, field_name: str) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise MalformedInput(f"{field_name} must be a mapping")
    return dict(payload)
