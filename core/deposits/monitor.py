"""Background deposit loops.

Two independent periodic tasks share nothing but the store:

- scan loop: discover new transfers and record them
- credit loop: refresh confirmations, then credit confirmed deposits

Each step is blocking (RPC, HTTP, SQL) and runs in a worker thread. Alerts
from a step's report go to the notification dispatcher. A corrupt record or
a missing master key stops the monitor; anything else is logged and retried
on the next interval.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from core.deposits.pipeline import FATAL_ERRORS, DepositLedger, TickReport
from core.deposits.scanner import ChainScanner
from core.notifications.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


class DepositMonitor:
    def __init__(
        self,
        *,
        ledger: DepositLedger,
        scanner: ChainScanner,
        notifier: NotificationDispatcher,
        scan_interval: float = 30.0,
        credit_interval: float = 30.0,
    ) -> None:
        self.ledger = ledger
        self.scanner = scanner
        self.notifier = notifier
        self.scan_interval = scan_interval
        self.credit_interval = credit_interval

    async def scan_once(self) -> TickReport:
        report = await asyncio.to_thread(self.ledger.scan, self.scanner)
        await self._dispatch(report)
        return report

    async def credit_once(self) -> TickReport:
        report = await asyncio.to_thread(self.ledger.tick)
        if not report.is_quiet:
            logger.info(
                "Credit tick: %d confirmed, %d credited, %d retrying, %d failed",
                len(report.confirmed),
                len(report.credited),
                len(report.retried),
                len(report.failed),
            )
        await self._dispatch(report)
        return report

    async def _dispatch(self, report: TickReport) -> None:
        for alert in report.alerts:
            await self.notifier.send_alert(alert.title, alert.message, severity=alert.severity)

    async def _loop(
        self,
        name: str,
        step: Callable[[], Awaitable[TickReport]],
        interval: float,
        stop_event: asyncio.Event,
    ) -> None:
        logger.info("%s loop started (every %.0fs)", name, interval)
        while not stop_event.is_set():
            try:
                await step()
            except FATAL_ERRORS:
                logger.critical("%s loop hit a fatal error; stopping deposit monitor", name, exc_info=True)
                stop_event.set()
                raise
            except Exception:
                logger.exception("%s loop step failed; retrying in %.0fs", name, interval)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("%s loop stopped", name)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run both loops until stop_event is set or one of them fails fatally."""
        stop_event = stop_event or asyncio.Event()
        tasks = [
            asyncio.create_task(self._loop("Scan", self.scan_once, self.scan_interval, stop_event)),
            asyncio.create_task(self._loop("Credit", self.credit_once, self.credit_interval, stop_event)),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.exception() is not None:
                    raise task.exception()
        finally:
            stop_event.set()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
