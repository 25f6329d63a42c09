"""Round exchange: submissions, aggregates, token accounting and key escrow."""

from .config import ExchangeProfile, load_profile
from .contract import RoundExchangeContract
from .contracts import (
    KeyRequest,
    KeyRequestBatch,
    ModelLayer,
    ModelPayload,
    ParticipantRound,
    ParticipantState,
    ServerRound,
    SymmetricKeyMaterial,
    TensorScalar,
    TensorSequence,
    TensorValue,
    tensor_from_json,
)
from .errors import (
    AlreadyExists,
    AlreadyRegistered,
    InsufficientTokens,
    InvariantViolation,
    MalformedInput,
    NotAuthorized,
    NotRegistered,
    RoundExchangeError,
    RoundNotFound,
    reason_code,
)
from .escrow import KeyEscrow
from .exchange import (
    INSUFFICIENT_TOKENS_MARKER,
    REASON_AGGREGATE_COMMITTED_NEW,
    REASON_AGGREGATE_REPLAY_MATCH,
    REASON_RESULT_FIRST_FETCH,
    REASON_RESULT_REPLAY,
    RESULT_DELIVERED,
    RESULT_WITHHELD,
    CreditEntry,
    PublishResult,
    ResultFetch,
    RoundExchange,
    SubmissionReceipt,
)
from .identity import IdentityResolver, common_name_from_identity, encode_x509_identity
from .layout import DEFAULT_AGGREGATOR_NAME, Participant, ParticipantRole, StateLayout
from .sampler import select_subset
from .tokens import TokenLedger, contribution_reward

__all__ = [
    "DEFAULT_AGGREGATOR_NAME",
    "INSUFFICIENT_TOKENS_MARKER",
    "REASON_AGGREGATE_COMMITTED_NEW",
    "REASON_AGGREGATE_REPLAY_MATCH",
    "REASON_RESULT_FIRST_FETCH",
    "REASON_RESULT_REPLAY",
    "RESULT_DELIVERED",
    "RESULT_WITHHELD",
    "AlreadyExists",
    "AlreadyRegistered",
    "CreditEntry",
    "ExchangeProfile",
    "IdentityResolver",
    "InsufficientTokens",
    "InvariantViolation",
    "KeyEscrow",
    "KeyRequest",
    "KeyRequestBatch",
    "MalformedInput",
    "ModelLayer",
    "ModelPayload",
    "NotAuthorized",
    "NotRegistered",
    "Participant",
    "ParticipantRole",
    "ParticipantRound",
    "ParticipantState",
    "PublishResult",
    "ResultFetch",
    "RoundExchange",
    "RoundExchangeContract",
    "RoundExchangeError",
    "RoundNotFound",
    "ServerRound",
    "StateLayout",
    "SubmissionReceipt",
    "SymmetricKeyMaterial",
    "TensorScalar",
    "TensorSequence",
    "TensorValue",
    "TokenLedger",
    "common_name_from_identity",
    "contribution_reward",
    "encode_x509_identity",
    "load_profile",
    "reason_code",
    "select_subset",
    "tensor_from_json",
]
