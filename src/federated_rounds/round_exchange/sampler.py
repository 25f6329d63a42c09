"""Deterministic seeded sampling of a round's eligible participants."""

from __future__ import annotations

import random

from federated_rounds.ledger import LedgerTransaction

from .layout import StateLayout


def select_subset(
    tx: LedgerTransaction,
    layout: StateLayout,
    eligible_round: int,
    count: int,
    seed: int,
) -> list[tuple[str, str]]:
    """Return up to ``count`` ``(key, record_json)`` pairs from the round's client pool.

    The pool is enumerated in key order. A generator local to this call and
    seeded only by ``seed`` shuffles it, so identical arguments over an
    unchanged pool always give the identical ordered subset.
    """
    if count <= 0:
        return []
    start, end = layout.client_round_range(eligible_round)
    pool = tx.get_state_by_range(start, end)
    if len(pool) <= count:
        return pool
    rng = random.Random(seed)
    rng.shuffle(pool)
    return pool[:count]
