from __future__ import annotations

from pathlib import Path

import pytest

from federated_rounds.ledger import (
    REASON_COLLECTION_ACCESS_DENIED,
    REASON_MVCC_READ_CONFLICT,
    REASON_PHANTOM_READ_CONFLICT,
    REASON_PRIVATE_READ_CONFLICT,
    LedgerAccessDenied,
    LedgerConflictError,
    LedgerStore,
    LedgerTransaction,
    create_composite_key,
    ledger_transaction,
)


def _store(tmp_path: Path, **kwargs: object) -> LedgerStore:
    return LedgerStore(tmp_path / "ledger.sqlite", **kwargs)


def _seed(store: LedgerStore, key: str, value: str) -> None:
    with ledger_transaction(store) as tx:
        tx.put_state(key, value)


def test_ledger_commit_assigns_versions_and_history(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "k", "v1")
    _seed(store, "k", "v2")
    with ledger_transaction(store) as tx:
        tx.delete_state("k")

    assert store.read("k") is None
    history = store.history("k")
    assert [entry.version for entry in history] == [1, 2, 3]
    assert [entry.value for entry in history] == ["v1", "v2", None]
    assert history[-1].is_delete is True

    _seed(store, "k", "v4")
    current = store.read("k")
    assert current is not None
    assert current.version == 4
    assert current.value == "v4"


def test_ledger_transaction_reads_its_own_buffered_writes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "a", "1")
    tx = LedgerTransaction(store)
    tx.put_state("a", "2")
    tx.put_state("b", "3")
    assert tx.get_state("a") == "2"
    assert tx.get_state_by_range("a", "c") == [("a", "2"), ("b", "3")]
    assert store.read("b") is None
    tx.commit()
    stored = store.read("b")
    assert stored is not None
    assert stored.value == "3"


def test_ledger_stale_read_is_rejected_at_commit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "balance", "1.0")

    first = LedgerTransaction(store)
    second = LedgerTransaction(store)
    assert first.get_state("balance") == "1.0"
    assert second.get_state("balance") == "1.0"
    first.put_state("balance", "0.0")
    second.put_state("balance", "0.0")
    first.commit()

    with pytest.raises(LedgerConflictError) as excinfo:
        second.commit()
    assert excinfo.value.code == REASON_MVCC_READ_CONFLICT
    assert [entry.value for entry in store.history("balance")] == ["1.0", "0.0"]


def test_ledger_read_of_absent_key_conflicts_with_concurrent_insert(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = LedgerTransaction(store)
    assert first.get_state("fresh") is None
    first.put_state("fresh", "mine")
    _seed(store, "fresh", "theirs")

    with pytest.raises(LedgerConflictError, match=REASON_MVCC_READ_CONFLICT):
        first.commit()
    stored = store.read("fresh")
    assert stored is not None
    assert stored.value == "theirs"


def test_ledger_range_read_detects_phantom_insert(tmp_path: Path) -> None:
    store = _store(tmp_path)
    alice = create_composite_key("Client", ["000000000001", "alice"])
    bob = create_composite_key("Client", ["000000000001", "bob"])
    _seed(store, alice, "{}")

    reader = LedgerTransaction(store)
    pool = reader.get_state_by_partial_composite_key("Client", ["000000000001"])
    assert [key for key, _ in pool] == [alice]
    reader.put_state("marker", "selected")
    _seed(store, bob, "{}")

    with pytest.raises(LedgerConflictError) as excinfo:
        reader.commit()
    assert excinfo.value.code == REASON_PHANTOM_READ_CONFLICT
    assert store.read("marker") is None


def test_ledger_read_only_transaction_still_validates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed(store, "k", "v1")
    tx = LedgerTransaction(store)
    tx.get_state("k")
    receipt_before = LedgerTransaction(store).commit()
    assert receipt_before.keys_written == 0
    _seed(store, "k", "v2")
    with pytest.raises(LedgerConflictError):
        tx.commit()


def test_ledger_context_manager_discards_on_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValueError, match="boom"):
        with ledger_transaction(store) as tx:
            tx.put_state("k", "v")
            tx.put_private_data("keys", "000000000001", "secret")
            raise ValueError("boom")
    assert store.read("k") is None
    assert store.read_private("keys", "000000000001") is None
    with pytest.raises(RuntimeError, match="already closed"):
        tx.get_state("k")


def test_ledger_private_data_is_versioned_and_conflict_checked(tmp_path: Path) -> None:
    store = _store(tmp_path)
    writer = LedgerTransaction(store)
    assert writer.get_private_data("keys", "000000000001") is None
    writer.put_private_data("keys", "000000000001", "first")

    with ledger_transaction(store) as tx:
        tx.put_private_data("keys", "000000000001", "second")

    with pytest.raises(LedgerConflictError) as excinfo:
        writer.commit()
    assert excinfo.value.code == REASON_PRIVATE_READ_CONFLICT
    stored = store.read_private("keys", "000000000001")
    assert stored is not None
    assert stored.value == "second"
    assert store.read("000000000001") is None


def test_ledger_collection_policy_rejects_non_members(tmp_path: Path) -> None:
    store = _store(tmp_path, collection_members={"keys": ["appserver", "alice"]})
    with ledger_transaction(store) as tx:
        tx.put_private_data("keys", "000000000001", "secret")

    stored = store.read_private("keys", "000000000001", reader="alice")
    assert stored is not None
    with pytest.raises(LedgerAccessDenied) as excinfo:
        store.read_private("keys", "000000000001", reader="mallory")
    assert excinfo.value.code == REASON_COLLECTION_ACCESS_DENIED
    with pytest.raises(LedgerAccessDenied):
        store.read_private("keys", "000000000001")
    assert store.read_private("open", "000000000001", reader="anyone") is None


def test_ledger_transient_inputs_are_not_persisted(tmp_path: Path) -> None:
    store = _store(tmp_path)
    tx = LedgerTransaction(store, transient={"password": b"hunter2"})
    assert tx.get_transient() == {"password": b"hunter2"}
    receipt = tx.commit()
    assert receipt.keys_written == 0
    assert tx.get_transient() == {}
