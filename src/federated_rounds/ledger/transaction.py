"""Per-invocation ledger transaction: buffered writes plus recorded read sets."""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Iterable, Iterator, Mapping
import uuid

from .keys import partial_key_range
from .store import (
    Changeset,
    CommitReceipt,
    HistoryEntry,
    LedgerConflictError,
    LedgerStore,
    RangeRead,
)


logger = logging.getLogger("federated_rounds.ledger.transaction")


class LedgerTransaction:
    """Simulates one invocation against committed state.

    Reads go to the store and are recorded with the version they observed;
    writes are buffered and become visible to later reads of the same
    transaction only. Nothing reaches the store until ``commit``.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        tx_id: str | None = None,
        transient: Mapping[str, bytes] | None = None,
    ) -> None:
        self.store = store
        self.tx_id = tx_id or uuid.uuid4().hex
        self._transient = {str(key): bytes(value) for key, value in (transient or {}).items()}
        self._reads: dict[str, int] = {}
        self._range_reads: list[RangeRead] = []
        self._private_reads: dict[tuple[str, str], int] = {}
        self._writes: dict[str, str | None] = {}
        self._private_writes: dict[tuple[str, str], str] = {}
        self._closed = False

    def get_state(self, key: str) -> str | None:
        self._ensure_open()
        if key in self._writes:
            return self._writes[key]
        current = self.store.read(key)
        self._reads.setdefault(key, current.version if current is not None else 0)
        return current.value if current is not None else None

    def put_state(self, key: str, value: str) -> None:
        self._ensure_open()
        self._writes[key] = value

    def delete_state(self, key: str) -> None:
        self._ensure_open()
        self._writes[key] = None

    def get_state_by_range(self, start: str, end: str) -> list[tuple[str, str]]:
        self._ensure_open()
        committed = self.store.scan(start, end)
        self._range_reads.append(
            RangeRead(
                start=start,
                end=end,
                observed=tuple((item.key, item.version) for item in committed),
            )
        )
        merged = {item.key: item.value for item in committed}
        for key, value in self._writes.items():
            if not (start <= key < end):
                continue
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return sorted(merged.items())

    def get_state_by_partial_composite_key(
        self, object_type: str, attributes: Iterable[str]
    ) -> list[tuple[str, str]]:
        start, end = partial_key_range(object_type, attributes)
        return self.get_state_by_range(start, end)

    def get_history_for_key(self, key: str) -> list[HistoryEntry]:
        # History reads are not revalidated at commit.
        self._ensure_open()
        return self.store.history(key)

    def get_private_data(
        self,
        collection: str,
        key: str,
        *,
        reader: str | None = None,
        check_access: bool = True,
    ) -> str | None:
        """Read restricted data; ``check_access=False`` is for writers checking their own slot."""
        self._ensure_open()
        if (collection, key) in self._private_writes:
            if check_access:
                self.store.check_collection_access(collection, reader)
            return self._private_writes[(collection, key)]
        current = self.store.read_private(collection, key, reader=reader, check_access=check_access)
        self._private_reads.setdefault((collection, key), current.version if current is not None else 0)
        return current.value if current is not None else None

    def put_private_data(self, collection: str, key: str, value: str) -> None:
        self._ensure_open()
        self._private_writes[(collection, key)] = value

    def get_transient(self) -> Mapping[str, bytes]:
        return dict(self._transient)

    def changeset(self) -> Changeset:
        return Changeset(
            tx_id=self.tx_id,
            reads=dict(self._reads),
            range_reads=tuple(self._range_reads),
            private_reads=dict(self._private_reads),
            writes=dict(self._writes),
            private_writes=dict(self._private_writes),
        )

    def commit(self) -> CommitReceipt:
        self._ensure_open()
        self._closed = True
        self._transient.clear()
        return self.store.commit(self.changeset())

    def discard(self) -> None:
        self._closed = True
        self._transient.clear()
        self._writes.clear()
        self._private_writes.clear()

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"ledger transaction {self.tx_id} is already closed")


@contextmanager
def ledger_transaction(
    store: LedgerStore,
    *,
    tx_id: str | None = None,
    transient: Mapping[str, bytes] | None = None,
) -> Iterator[LedgerTransaction]:
    """Yield a transaction that commits on clean exit and is discarded on error."""
    tx = LedgerTransaction(store, tx_id=tx_id, transient=transient)
    try:
        yield tx
    except BaseException:
        tx.discard()
        raise
    try:
        tx.commit()
    except LedgerConflictError as exc:
        logger.warning("ledger commit rejected tx_id=%s reason=%s", tx.tx_id, exc)
        raise
