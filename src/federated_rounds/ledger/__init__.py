"""Versioned key-value ledger surfaces used by the round exchange."""

from .keys import (
    COMPOSITE_KEY_NAMESPACE,
    CompositeKeyError,
    create_composite_key,
    partial_key_range,
    split_composite_key,
)
from .store import (
    REASON_COLLECTION_ACCESS_DENIED,
    REASON_MVCC_READ_CONFLICT,
    REASON_PHANTOM_READ_CONFLICT,
    REASON_PRIVATE_READ_CONFLICT,
    Changeset,
    CommitReceipt,
    HistoryEntry,
    LedgerAccessDenied,
    LedgerConflictError,
    LedgerError,
    LedgerStore,
    RangeRead,
    VersionedValue,
)
from .transaction import LedgerTransaction, ledger_transaction

__all__ = [
    "COMPOSITE_KEY_NAMESPACE",
    "Changeset",
    "CommitReceipt",
    "CompositeKeyError",
    "HistoryEntry",
    "LedgerAccessDenied",
    "LedgerConflictError",
    "LedgerError",
    "LedgerStore",
    "LedgerTransaction",
    "RangeRead",
    "REASON_COLLECTION_ACCESS_DENIED",
    "REASON_MVCC_READ_CONFLICT",
    "REASON_PHANTOM_READ_CONFLICT",
    "REASON_PRIVATE_READ_CONFLICT",
    "VersionedValue",
    "create_composite_key",
    "ledger_transaction",
    "partial_key_range",
    "split_composite_key",
]
