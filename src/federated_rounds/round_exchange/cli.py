"""CLI for invoking one round exchange function against a ledger."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from federated_rounds.ledger import LedgerError

from .config import ExchangeProfile, load_profile
from .contract import RoundExchangeContract
from .errors import RoundExchangeError, reason_code
from .logging_utils import configure_logging


def _parse_transient(entries: list[str] | None) -> dict[str, bytes]:
    transient: dict[str, bytes] = {}
    for entry in entries or []:
        if "=" not in entry:
            raise SystemExit(f"--transient expects key=value, got {entry!r}")
        key, value = entry.split("=", 1)
        transient[key.strip()] = value.encode("utf-8")
    return transient


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Federated round exchange CLI")
    parser.add_argument("--profile", help="Path to round exchange profile YAML (defaults apply if omitted)")
    parser.add_argument("--ledger", help="Override the profile's ledger locator")
    parser.add_argument("--identity", required=True, help="Caller identity (x509 blob or plain name)")
    parser.add_argument("--transient", action="append", help="Transient input as key=value (repeatable)")
    parser.add_argument("function", help="Exchange function, e.g. Register, SubmitUpdate, FetchResult")
    parser.add_argument("args", nargs="*", help="Positional function arguments")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    profile = load_profile(Path(args.profile)) if args.profile else ExchangeProfile()
    if args.ledger:
        profile = profile.model_copy(update={"ledger_locator": args.ledger})
    configure_logging(level=logging.INFO, log_paths=profile.log_paths)
    contract = RoundExchangeContract(profile)
    try:
        result = contract.invoke(
            args.function,
            args.args,
            identity=args.identity,
            transient=_parse_transient(args.transient),
        )
    except (RoundExchangeError, LedgerError) as exc:
        print(json.dumps({"error": reason_code(exc), "detail": exc.detail}, ensure_ascii=True))
        raise SystemExit(1) from exc
    finally:
        contract.store.close()
    print(json.dumps(result, sort_keys=True, ensure_ascii=True))


if __name__ == "__main__":
    main()
