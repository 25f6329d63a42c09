"""Per-participant token balances: contribution credits and gated debits."""

from __future__ import annotations

from dataclasses import replace
import logging
import math

from .contracts import ParticipantState
from .errors import InsufficientTokens, MalformedInput
from .state import ParticipantStateStore


logger = logging.getLogger("federated_rounds.round_exchange.tokens")

DEFAULT_REWARD_OFFSET = 5.0
DEFAULT_REWARD_DIVISOR = 20.0
DEFAULT_CONSUMPTION_COST = 1.0


def contribution_reward(
    privacy_budget: float,
    *,
    offset: float = DEFAULT_REWARD_OFFSET,
    divisor: float = DEFAULT_REWARD_DIVISOR,
) -> float:
    return (privacy_budget + offset) / divisor


class TokenLedger:
    """Balance mutations against participant state in the current transaction.

    The balance check and the debit read and write the same state record in
    one transaction, so a concurrent credit or debit on that participant makes
    the later commit fail validation instead of passing the gate twice.
    """

    def __init__(
        self,
        states: ParticipantStateStore,
        *,
        consumption_cost: float = DEFAULT_CONSUMPTION_COST,
    ) -> None:
        self.states = states
        self.consumption_cost = consumption_cost

    def balance(self, name: str) -> float:
        return self.states.require(name).token_balance

    def credit(self, name: str, amount: float) -> ParticipantState:
        _require_amount(amount)
        state = self.states.require(name)
        updated = replace(state, token_balance=state.token_balance + amount)
        self.states.put(name, updated)
        logger.info("token credit participant=%s amount=%.4f balance=%.4f", name, amount, updated.token_balance)
        return updated

    def debit_if_available(self, name: str, amount: float | None = None) -> ParticipantState:
        cost = self.consumption_cost if amount is None else amount
        _require_amount(cost)
        state = self.states.require(name)
        if state.token_balance < cost:
            raise InsufficientTokens(f"{name} balance={state.token_balance:.4f} required={cost:.4f}")
        updated = replace(state, token_balance=state.token_balance - cost)
        self.states.put(name, updated)
        logger.info("token debit participant=%s amount=%.4f balance=%.4f", name, cost, updated.token_balance)
        return updated


def _require_amount(amount: float) -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount < 0:
        raise MalformedInput(f"token amount must be a finite number >= 0, got {amount!r}")
