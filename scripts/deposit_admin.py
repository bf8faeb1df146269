#!/usr/bin/env python3
"""Operator actions on custodial deposits.

Usage:
    python -m scripts.deposit_admin status 0xabc...
    python -m scripts.deposit_admin claim 0xabc... --user alice
    python -m scripts.deposit_admin reset 0xabc...
    python -m scripts.deposit_admin balance alice
    python -m scripts.deposit_admin list --status failed
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Sequence

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import ConfigError  # noqa: E402
from core.context import CustodyContext  # noqa: E402
from core.deposits.balances import get_balance_view  # noqa: E402
from core.deposits.pipeline import DepositError  # noqa: E402
from core.security.secret_box import SecretBoxKeyError  # noqa: E402
from core.types import DEPOSIT_STATUSES, DepositRecord  # noqa: E402

logger = logging.getLogger("deposit-admin")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and repair custodial deposits")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show one deposit")
    status.add_argument("tx_hash")

    claim = sub.add_parser("claim", help="Attach a deposit to a user")
    claim.add_argument("tx_hash")
    claim.add_argument("--user", required=True, help="User id that made the deposit")

    reset = sub.add_parser("reset", help="Move a failed deposit back to confirmed")
    reset.add_argument("tx_hash")

    balance = sub.add_parser("balance", help="Show a user's balance view")
    balance.add_argument("user_id")

    listing = sub.add_parser("list", help="List deposits")
    listing.add_argument("--status", choices=sorted(DEPOSIT_STATUSES), action="append")
    listing.add_argument("--user", default=None)
    listing.add_argument("--limit", type=int, default=50)

    return parser


def _format_record(record: DepositRecord) -> str:
    lines = [
        f"tx_hash:       {record.tx_hash}",
        f"status:        {record.status}",
        f"amount:        {record.amount}",
        f"user:          {record.user_id or '-'}",
        f"from:          {record.from_address}",
        f"block:         {record.block_number}",
        f"confirmations: {record.confirmations}/{record.required_confirmations}",
        f"venue credit:  {'yes' if record.orderly_confirmed else 'no'}",
        f"retries:       {record.retry_count} (resets: {record.reset_count})",
    ]
    if record.error_message:
        lines.append(f"last error:    {record.error_message}")
    return "\n".join(lines)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    try:
        ctx = CustodyContext.build()
        ledger = ctx.deposit_ledger()
    except (ConfigError, SecretBoxKeyError) as exc:
        logger.error("Startup failed: %s", exc)
        return 2

    try:
        if args.command == "status":
            print(_format_record(ledger.get(args.tx_hash)))
        elif args.command == "claim":
            print(_format_record(ledger.claim(args.tx_hash, args.user)))
        elif args.command == "reset":
            print(_format_record(ledger.reset_failed(args.tx_hash)))
        elif args.command == "balance":
            view = get_balance_view(args.user_id, ledger=ctx.stores, deposits=ctx.stores)
            print(f"available:      {view.available}")
            print(f"total deposits: {view.total_deposits}")
            print(f"on hold:        {view.on_hold}")
            for item in view.processing:
                print(
                    f"processing:     {item.tx_hash} {item.amount} "
                    f"({item.status}, {item.confirmations}/{item.required_confirmations})"
                )
        elif args.command == "list":
            records = ctx.stores.list_deposits(statuses=args.status, user_id=args.user, limit=args.limit)
            for record in records:
                print(f"{record.tx_hash}  {record.status:<9}  {record.amount:>14}  {record.user_id or '-'}")
            print(f"{len(records)} deposit(s)")
    except DepositError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
