"""Operator CLI for inspecting and correcting page-credit balances."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pydantic import ValidationError  # noqa: E402

from core.constants import REASON_CODES  # noqa: E402
from core.settings import reload_settings  # noqa: E402
from credits import CreditService, build_service  # noqa: E402
from logging_utils import init_logging, log_extra, mask_owner  # noqa: E402
from support_actions import (  # noqa: E402
    GrantPagesRequest,
    IdempotencyConflict,
    ReversePagesRequest,
    StatusChangeRequest,
    SupportActionService,
)

log = logging.getLogger("ledger-admin")


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, default=str)


def _common_action_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("owner_id")
    parser.add_argument("--admin", required=True, help="operator identifier recorded on the action")
    parser.add_argument("--key", required=True, help="idempotency key")
    parser.add_argument(
        "--reason",
        required=True,
        choices=REASON_CODES,
    )
    parser.add_argument("--reference", required=True, help="ticket or payment reference")
    parser.add_argument("--notes", default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger-admin", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    balance = sub.add_parser("balance", help="show an account")
    balance.add_argument("owner_id")

    history = sub.add_parser("history", help="show recent ledger entries")
    history.add_argument("owner_id")
    history.add_argument("--limit", type=int, default=20)

    grant = sub.add_parser("grant", help="credit pages to an account")
    _common_action_args(grant)
    grant.add_argument("--pages", type=int, required=True)

    reverse = sub.add_parser("reverse", help="reverse pages from an account")
    _common_action_args(reverse)
    reverse.add_argument("--pages", type=int, required=True)

    status = sub.add_parser("status", help="change account status")
    _common_action_args(status)
    status.add_argument("--set", dest="new_status", required=True)

    return parser


def run(args: argparse.Namespace, service: CreditService) -> int:
    if args.command == "balance":
        account = service.get_account(args.owner_id)
        if account is None:
            print(f"no account for {args.owner_id}")
            return 1
        print(_dump(asdict(account)))
        return 0

    if args.command == "history":
        entries = service.history(args.owner_id, args.limit)
        print(_dump([asdict(entry) for entry in entries]))
        return 0

    actions = SupportActionService(service)
    common = {
        "admin_identifier": args.admin,
        "target_owner_id": args.owner_id,
        "idempotency_key": args.key,
        "reason_code": args.reason,
        "reference_id": args.reference,
        "notes": args.notes,
    }
    try:
        if args.command == "grant":
            result = actions.grant_pages(GrantPagesRequest(amount_pages=args.pages, **common))
        elif args.command == "reverse":
            result = actions.reverse_pages(ReversePagesRequest(amount_pages=args.pages, **common))
        else:
            result = actions.change_status(StatusChangeRequest(new_status=args.new_status, **common))
    except (ValidationError, ValueError) as exc:
        print(f"invalid request: {exc}")
        return 2
    except IdempotencyConflict as exc:
        print(str(exc))
        return 3

    log.info(
        "ledger_admin.%s",
        args.command,
        extra=log_extra(owner=mask_owner(args.owner_id), key=args.key, status=result.status),
    )
    print(_dump({"status": result.status, "idempotent": result.idempotent, "record": asdict(result.record)}))
    return 0 if result.applied else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = reload_settings()
    init_logging("ledger-admin", cfg.LOG_LEVEL)
    service = build_service(cfg)
    try:
        return run(args, service)
    finally:
        service.storage.stop()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
