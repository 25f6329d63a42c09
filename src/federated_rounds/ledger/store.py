"""Versioned key-value ledger store with optimistic commit validation."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
import sqlite3
from typing import Any, Iterable, Iterator, Mapping

from federated_rounds.postgres_runtime import (
    clear_threadlocal_postgres_connections,
    is_postgres_dsn,
    postgres_threadlocal_connection,
)


logger = logging.getLogger("federated_rounds.ledger.store")

REASON_MVCC_READ_CONFLICT = "MVCC_READ_CONFLICT"
REASON_PHANTOM_READ_CONFLICT = "PHANTOM_READ_CONFLICT"
REASON_PRIVATE_READ_CONFLICT = "PRIVATE_READ_CONFLICT"
REASON_COLLECTION_ACCESS_DENIED = "COLLECTION_ACCESS_DENIED"

_COMMIT_LOCK_ID = 0x46524C47


class LedgerError(RuntimeError):
    """Raised when ledger operations fail unexpectedly."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class LedgerConflictError(LedgerError):
    """Raised when a commit's reads were invalidated by a concurrent commit."""


class LedgerAccessDenied(LedgerError):
    """Raised when a reader is not a member of a restricted collection."""


@dataclass(frozen=True)
class VersionedValue:
    key: str
    value: str
    version: int


@dataclass(frozen=True)
class HistoryEntry:
    key: str
    version: int
    value: str | None
    is_delete: bool
    tx_id: str
    committed_at_utc: str


@dataclass(frozen=True)
class RangeRead:
    start: str
    end: str
    observed: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class Changeset:
    tx_id: str
    reads: Mapping[str, int] = field(default_factory=dict)
    range_reads: tuple[RangeRead, ...] = ()
    private_reads: Mapping[tuple[str, str], int] = field(default_factory=dict)
    writes: Mapping[str, str | None] = field(default_factory=dict)
    private_writes: Mapping[tuple[str, str], str] = field(default_factory=dict)

    def is_read_only(self) -> bool:
        return not self.writes and not self.private_writes


@dataclass(frozen=True)
class CommitReceipt:
    tx_id: str
    committed_at_utc: str
    keys_written: int


class LedgerStore:
    """Shared world state plus restricted collections, committed one changeset at a time.

    Reads outside a commit observe committed state only. ``commit`` serializes
    on the backend's write lock, re-checks every recorded read version and
    range result, and applies the whole changeset or nothing.
    """

    def __init__(
        self,
        locator: str | Path,
        *,
        collection_members: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.locator = str(locator)
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        if self.backend == "sqlite":
            db_path = Path(_sqlite_path(self.locator))
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.collection_members = {
            str(name): frozenset(str(member) for member in members)
            for name, members in (collection_members or {}).items()
        }
        self._init_schema()

    def read(self, key: str) -> VersionedValue | None:
        with self._connection() as conn:
            row = _query_one(
                conn,
                self.backend,
                "SELECT value_json, version FROM fr_world_state WHERE state_key = {p1}",
                (key,),
            )
        if row is None:
            return None
        return VersionedValue(key=key, value=str(row[0]), version=int(row[1]))

    def scan(self, start: str, end: str) -> list[VersionedValue]:
        with self._connection() as conn:
            rows = _query_all(
                conn,
                self.backend,
                """
                SELECT state_key, value_json, version
                FROM fr_world_state
                WHERE state_key >= {p1} AND state_key < {p2}
                ORDER BY state_key
                """,
                (start, end),
            )
        return [VersionedValue(key=str(row[0]), value=str(row[1]), version=int(row[2])) for row in rows]

    def read_private(
        self,
        collection: str,
        key: str,
        *,
        reader: str | None = None,
        check_access: bool = True,
    ) -> VersionedValue | None:
        if check_access:
            self.check_collection_access(collection, reader)
        with self._connection() as conn:
            row = _query_one(
                conn,
                self.backend,
                """
                SELECT value_json, version
                FROM fr_private_state
                WHERE collection = {p1} AND state_key = {p2}
                """,
                (collection, key),
            )
        if row is None:
            return None
        return VersionedValue(key=key, value=str(row[0]), version=int(row[1]))

    def history(self, key: str) -> list[HistoryEntry]:
        with self._connection() as conn:
            rows = _query_all(
                conn,
                self.backend,
                """
                SELECT version, value_json, is_delete, tx_id, committed_at_utc
                FROM fr_state_history
                WHERE state_key = {p1}
                ORDER BY version
                """,
                (key,),
            )
        return [
            HistoryEntry(
                key=key,
                version=int(row[0]),
                value=None if row[1] is None else str(row[1]),
                is_delete=bool(row[2]),
                tx_id=str(row[3]),
                committed_at_utc=str(row[4]),
            )
            for row in rows
        ]

    def close(self) -> None:
        # sqlite connections are per call; only cached Postgres sessions outlive one.
        if self.backend == "postgres":
            clear_threadlocal_postgres_connections()

    def check_collection_access(self, collection: str, reader: str | None) -> None:
        members = self.collection_members.get(collection)
        if members is None:
            return
        if reader is None or reader not in members:
            raise LedgerAccessDenied(REASON_COLLECTION_ACCESS_DENIED, f"{collection}:{reader or ''}")

    def commit(self, changeset: Changeset) -> CommitReceipt:
        committed_at_utc = _utc_now()
        with self._connection() as conn:
            if self.backend == "sqlite":
                conn.execute("BEGIN IMMEDIATE")
            else:
                _execute(conn, self.backend, "SELECT pg_advisory_xact_lock({p1})", (_COMMIT_LOCK_ID,))
            self._validate(conn, changeset)
            if changeset.is_read_only():
                return CommitReceipt(tx_id=changeset.tx_id, committed_at_utc=committed_at_utc, keys_written=0)
            for key, value in sorted(changeset.writes.items()):
                self._apply_write(conn, changeset.tx_id, key, value, committed_at_utc)
            for (collection, key), value in sorted(changeset.private_writes.items()):
                self._apply_private_write(conn, changeset.tx_id, collection, key, value, committed_at_utc)
        keys_written = len(changeset.writes) + len(changeset.private_writes)
        logger.debug("ledger commit tx_id=%s keys_written=%s", changeset.tx_id, keys_written)
        return CommitReceipt(tx_id=changeset.tx_id, committed_at_utc=committed_at_utc, keys_written=keys_written)

    def _validate(self, conn: Any, changeset: Changeset) -> None:
        for key, read_version in changeset.reads.items():
            row = _query_one(
                conn,
                self.backend,
                "SELECT version FROM fr_world_state WHERE state_key = {p1}",
                (key,),
            )
            current_version = int(row[0]) if row is not None else 0
            if current_version != read_version:
                raise LedgerConflictError(REASON_MVCC_READ_CONFLICT, repr(key))
        for range_read in changeset.range_reads:
            rows = _query_all(
                conn,
                self.backend,
                """
                SELECT state_key, version
                FROM fr_world_state
                WHERE state_key >= {p1} AND state_key < {p2}
                ORDER BY state_key
                """,
                (range_read.start, range_read.end),
            )
            current = tuple((str(row[0]), int(row[1])) for row in rows)
            if current != range_read.observed:
                raise LedgerConflictError(REASON_PHANTOM_READ_CONFLICT, repr(range_read.start))
        for (collection, key), read_version in changeset.private_reads.items():
            row = _query_one(
                conn,
                self.backend,
                "SELECT version FROM fr_private_state WHERE collection = {p1} AND state_key = {p2}",
                (collection, key),
            )
            current_version = int(row[0]) if row is not None else 0
            if current_version != read_version:
                raise LedgerConflictError(REASON_PRIVATE_READ_CONFLICT, f"{collection}:{key!r}")

    def _apply_write(self, conn: Any, tx_id: str, key: str, value: str | None, committed_at_utc: str) -> None:
        row = _query_one(
            conn,
            self.backend,
            "SELECT MAX(version) FROM fr_state_history WHERE state_key = {p1}",
            (key,),
        )
        version = int((row[0] if row is not None else 0) or 0) + 1
        if value is None:
            _execute(conn, self.backend, "DELETE FROM fr_world_state WHERE state_key = {p1}", (key,))
        else:
            _execute(
                conn,
                self.backend,
                """
                INSERT INTO fr_world_state (state_key, value_json, version, tx_id, updated_at_utc)
                VALUES ({p1}, {p2}, {p3}, {p4}, {p5})
                ON CONFLICT (state_key) DO UPDATE SET
                    value_json = excluded.value_json,
                    version = excluded.version,
                    tx_id = excluded.tx_id,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (key, value, version, tx_id, committed_at_utc),
            )
        _execute(
            conn,
            self.backend,
            """
            INSERT INTO fr_state_history (state_key, version, value_json, is_delete, tx_id, committed_at_utc)
            VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6})
            """,
            (key, version, value, 1 if value is None else 0, tx_id, committed_at_utc),
        )

    def _apply_private_write(
        self,
        conn: Any,
        tx_id: str,
        collection: str,
        key: str,
        value: str,
        committed_at_utc: str,
    ) -> None:
        row = _query_one(
            conn,
            self.backend,
            "SELECT version FROM fr_private_state WHERE collection = {p1} AND state_key = {p2}",
            (collection, key),
        )
        version = int(row[0]) + 1 if row is not None else 1
        _execute(
            conn,
            self.backend,
            """
            INSERT INTO fr_private_state (collection, state_key, value_json, version, tx_id, updated_at_utc)
            VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6})
            ON CONFLICT (collection, state_key) DO UPDATE SET
                value_json = excluded.value_json,
                version = excluded.version,
                tx_id = excluded.tx_id,
                updated_at_utc = excluded.updated_at_utc
            """,
            (collection, key, value, version, tx_id, committed_at_utc),
        )

    def _init_schema(self) -> None:
        # Range scans compare keys bytewise; Postgres needs the C collation for that.
        collate = ' COLLATE "C"' if self.backend == "postgres" else ""
        with self._connection() as conn:
            _execute_script(
                conn,
                self.backend,
                f"""
                CREATE TABLE IF NOT EXISTS fr_world_state (
                    state_key TEXT{collate} PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    tx_id TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS fr_private_state (
                    collection TEXT NOT NULL,
                    state_key TEXT{collate} NOT NULL,
                    value_json TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    tx_id TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (collection, state_key)
                );
                CREATE TABLE IF NOT EXISTS fr_state_history (
                    state_key TEXT{collate} NOT NULL,
                    version INTEGER NOT NULL,
                    value_json TEXT,
                    is_delete INTEGER NOT NULL DEFAULT 0,
                    tx_id TEXT NOT NULL,
                    committed_at_utc TEXT NOT NULL,
                    PRIMARY KEY (state_key, version)
                );
                """,
            )

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        if self.backend == "sqlite":
            conn = sqlite3.connect(_sqlite_path(self.locator), timeout=30.0)
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
            return
        with postgres_threadlocal_connection(self.locator) as conn:
            yield conn


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _render_sql(sql: str, backend: str) -> str:
    placeholder = "%s" if backend == "postgres" else "?"
    rendered = sql
    for idx in range(1, 11):
        rendered = rendered.replace(f"{{p{idx}}}", placeholder)
    return rendered


def _query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered = _render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return cur.fetchone()


def _query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered = _render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return list(cur.fetchall())


def _execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> None:
    rendered = _render_sql(sql, backend)
    if backend == "sqlite":
        conn.execute(rendered, params)
    else:
        conn.cursor().execute(rendered, params)


def _execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
        return
    statements = [item.strip() for item in sql.split(";") if item.strip()]
    cur = conn.cursor()
    for statement in statements:
        cur.execute(statement)
