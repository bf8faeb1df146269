#!/usr/bin/env python3
"""Run the deposit scan and credit loops until interrupted.

Usage:
    python -m scripts.run_deposit_monitor
    python -m scripts.run_deposit_monitor --once
    python -m scripts.run_deposit_monitor --scan-interval 15 --credit-interval 60
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Sequence

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import ConfigError  # noqa: E402
from core.context import CustodyContext  # noqa: E402
from core.deposits.monitor import DepositMonitor  # noqa: E402
from core.persistence.interfaces import CorruptRecordError  # noqa: E402
from core.security.secret_box import SecretBoxKeyError  # noqa: E402

logger = logging.getLogger("deposit-monitor")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Detect, confirm and credit custodial USDC deposits")
    parser.add_argument("--scan-interval", type=float, default=None, help="Seconds between scans (default: env)")
    parser.add_argument(
        "--credit-interval", type=float, default=None, help="Seconds between credit ticks (default: env)"
    )
    parser.add_argument("--once", action="store_true", help="Run one scan and one credit tick, then exit")
    return parser


async def _run(monitor: DepositMonitor, *, once: bool) -> None:
    if once:
        scan = await monitor.scan_once()
        credit = await monitor.credit_once()
        logger.info(
            "Single pass: %d recorded, %d confirmed, %d credited, %d failed",
            len(scan.recorded),
            len(credit.confirmed),
            len(credit.credited),
            len(credit.failed),
        )
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await monitor.run(stop_event)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    try:
        ctx = CustodyContext.build()
        settings = ctx.config.deposits
        monitor = DepositMonitor(
            ledger=ctx.deposit_ledger(),
            scanner=ctx.chain_scanner(),
            notifier=ctx.notifier,
            scan_interval=args.scan_interval or settings.scan_interval_seconds,
            credit_interval=args.credit_interval or settings.credit_interval_seconds,
        )
    except (ConfigError, SecretBoxKeyError) as exc:
        logger.error("Startup failed: %s", exc)
        return 2

    if not ctx.notifier.has_channels:
        logger.warning("No alert channel configured; deposit alerts will only be logged")

    try:
        asyncio.run(_run(monitor, once=args.once))
    except CorruptRecordError as exc:
        logger.critical("Deposit monitor stopped on a corrupt record: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
