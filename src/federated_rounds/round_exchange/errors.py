"""Round exchange error taxonomy and helpers."""

from __future__ import annotations

from federated_rounds.ledger import LedgerError


REASON_NOT_REGISTERED = "NOT_REGISTERED"
REASON_ALREADY_EXISTS = "ALREADY_EXISTS"
REASON_ALREADY_REGISTERED = "ALREADY_REGISTERED"
REASON_ROUND_NOT_FOUND = "ROUND_NOT_FOUND"
REASON_INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
REASON_MALFORMED_INPUT = "MALFORMED_INPUT"
REASON_INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
REASON_NOT_AUTHORIZED = "NOT_AUTHORIZED"


class RoundExchangeError(RuntimeError):
    """Stable, policy-safe error surfaced to the caller as a reason code."""

    code = "INTERNAL_ERROR"

    def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
        if code:
            self.code = code
        self.detail = detail
        message = f"{self.code}:{detail}" if detail else self.code
        super().__init__(message)


class NotRegistered(RoundExchangeError):
    code = REASON_NOT_REGISTERED


class AlreadyExists(RoundExchangeError):
    code = REASON_ALREADY_EXISTS


class AlreadyRegistered(AlreadyExists):
    code = REASON_ALREADY_REGISTERED


class RoundNotFound(RoundExchangeError):
    code = REASON_ROUND_NOT_FOUND


class InsufficientTokens(RoundExchangeError):
    code = REASON_INSUFFICIENT_TOKENS


class MalformedInput(RoundExchangeError, ValueError):
    code = REASON_MALFORMED_INPUT


class InvariantViolation(RoundExchangeError):
    """Stored state breaks an invariant; fatal for the invocation."""

    code = REASON_INVARIANT_VIOLATION


class NotAuthorized(RoundExchangeError):
    code = REASON_NOT_AUTHORIZED


def reason_code(exc: Exception) -> str:
    if isinstance(exc, (RoundExchangeError, LedgerError)):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
