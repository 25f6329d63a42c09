"""Per-thread Postgres connections shared by ledger stores with the same DSN."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Any, Iterator

import psycopg


logger = logging.getLogger("federated_rounds.postgres_runtime")

CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF_SECONDS = 0.05

_POOL = threading.local()


def is_postgres_dsn(value: str | None) -> bool:
    text = str(value or "")
    return text.startswith(("postgres://", "postgresql://"))


@contextmanager
def postgres_threadlocal_connection(dsn: str) -> Iterator[psycopg.Connection[Any]]:
    """Yield this thread's connection for ``dsn``; commit on success, roll back on error.

    A connection that fails to roll back or commit is dropped so the next
    caller reconnects instead of inheriting an aborted transaction.
    """
    key = str(dsn or "").strip()
    conn = _checkout(key)
    try:
        yield conn
    except BaseException:
        try:
            conn.rollback()
        except psycopg.Error:
            logger.warning("postgres rollback failed; dropping connection")
            _discard(key)
        raise
    try:
        conn.commit()
    except psycopg.Error:
        _discard(key)
        raise
    if _unusable(conn):
        _discard(key)


def clear_threadlocal_postgres_connections() -> None:
    for key in list(_connections()):
        _discard(key)


def _connections() -> dict[str, psycopg.Connection[Any]]:
    if not hasattr(_POOL, "by_dsn"):
        _POOL.by_dsn = {}
    return _POOL.by_dsn


def _checkout(dsn: str) -> psycopg.Connection[Any]:
    pool = _connections()
    conn = pool.get(dsn)
    if conn is not None:
        if not _unusable(conn):
            return conn
        _discard(dsn)
    for attempt in range(CONNECT_ATTEMPTS):
        try:
            conn = psycopg.connect(dsn)
        except psycopg.OperationalError:
            if attempt == CONNECT_ATTEMPTS - 1:
                raise
            time.sleep(CONNECT_BACKOFF_SECONDS * (2**attempt))
            continue
        pool[dsn] = conn
        return conn
    raise psycopg.OperationalError("postgres connection attempt failed")


def _discard(dsn: str) -> None:
    conn = _connections().pop(dsn, None)
    if conn is None:
        return
    try:
        conn.close()
    except psycopg.Error as exc:
        logger.debug("postgres close failed: %s", exc)


def _unusable(conn: psycopg.Connection[Any]) -> bool:
    return bool(conn.closed) or bool(getattr(conn, "broken", False))
