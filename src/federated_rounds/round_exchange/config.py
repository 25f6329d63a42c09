"""Configuration loader for round exchange profiles."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, field_validator

from .layout import DEFAULT_AGGREGATOR_NAME
from .tokens import DEFAULT_CONSUMPTION_COST, DEFAULT_REWARD_DIVISOR, DEFAULT_REWARD_OFFSET

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ExchangeProfile(BaseModel):
    profile_id: str = "local"
    ledger_locator: str = "runs/federated_rounds/ledger.sqlite"
    aggregator_name: str = DEFAULT_AGGREGATOR_NAME
    initial_balance: float = 1.0
    consumption_cost: float = DEFAULT_CONSUMPTION_COST
    reward_offset: float = DEFAULT_REWARD_OFFSET
    reward_divisor: float = DEFAULT_REWARD_DIVISOR
    default_selection_count: int = 10
    default_key_collection: str = "roundKeyCollection"
    aggregator_only_operations: bool = False
    collection_members: dict[str, list[str]] = {}
    log_paths: list[str] = []

    @field_validator("aggregator_name", "ledger_locator", "default_key_collection")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("must be a non-empty string")
        return text

    @field_validator("initial_balance", "consumption_cost")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("reward_divisor")
    @classmethod
    def _positive_divisor(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value


def _expand_str(value: str) -> str:
    def replacer(match: re.Match[str]) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ValueError(f"missing environment variable: {token}")
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand_payload(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _expand_payload(item) for key, item in value.items()}
    return value


def load_profile(path: Path) -> ExchangeProfile:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("ROUND_EXCHANGE_PROFILE_INVALID")
    section = data.get("round_exchange", data)
    expanded = _expand_payload(section)
    return ExchangeProfile(**expanded)
