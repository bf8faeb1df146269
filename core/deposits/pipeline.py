"""Deposit settlement state machine.

    pending --(confirmations >= required)--> confirmed --(mirror ok)--> credited
                                                  |
                                                  +--(non-retryable / retries exhausted)--> failed
    failed --(operator reset, bounded)--> confirmed

Crediting a confirmed, owned record is two steps:

1. Internal ledger credit keyed by tx_hash. Exactly once: the ledger ignores a
   reference it has already applied, so re-running after a crash is a no-op.
2. Mirror the credit to the venue. Failures keep the record `confirmed`, bump
   `retry_count` and store `error_message`; later ticks retry.

Venue, RPC and key errors are contained per record and reported in the
returned `TickReport`. A record that cannot be read back (`CorruptRecordError`)
or a missing master key stops the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Literal, Optional, Protocol

from cex.orderly.api.errors import ClockSkewError, DuplicateRequestError, OrderlyApiError
from cex.orderly.api.orderly_client import OrderlyClient
from core.config import DepositSettings
from core.custody.keys import KeyService
from core.deposits.chain import ChainClient, ChainRpcError
from core.deposits.scanner import ChainScanner, CursorGapError, merge_transfers
from core.persistence.interfaces import AccountStore, CorruptRecordError, DepositStore, LedgerStore
from core.security.secret_box import SecretBoxError, SecretBoxKeyError
from core.types import DEPOSIT_STATUSES, DepositRecord, TransferEvent, utc_now

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "confirmed")

# Errors that stop the run instead of being recorded against one deposit.
FATAL_ERRORS = (CorruptRecordError, SecretBoxKeyError)


class DepositError(Exception):
    """Base exception for operator-facing deposit operations."""


class DepositNotFoundError(DepositError):
    pass


class ClaimError(DepositError):
    """A claim cannot be honored (owned by someone else, not a deposit, too small)."""


class ResetError(DepositError):
    """Record is not failed, or its reset budget is spent."""


class MirrorUnavailable(Exception):
    """The venue credit cannot be attempted yet (no account or no valid signing key)."""


@dataclass(frozen=True)
class DepositAlert:
    tx_hash: str
    title: str
    message: str
    severity: Literal["info", "warning", "error"] = "error"


@dataclass
class TickReport:
    recorded: list[str] = field(default_factory=list)
    confirmed: list[str] = field(default_factory=list)
    credited: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    alerts: list[DepositAlert] = field(default_factory=list)

    def extend(self, other: "TickReport") -> "TickReport":
        self.recorded.extend(other.recorded)
        self.confirmed.extend(other.confirmed)
        self.credited.extend(other.credited)
        self.retried.extend(other.retried)
        self.failed.extend(other.failed)
        self.errors.extend(other.errors)
        self.alerts.extend(other.alerts)
        return self

    @property
    def is_quiet(self) -> bool:
        return not (self.recorded or self.confirmed or self.credited or self.retried or self.failed or self.errors)


class CreditMirror(Protocol):
    def __call__(self, record: DepositRecord) -> None:
        """Apply the record's amount to its owner's venue account."""


class VenueCreditMirror:
    """Mirrors a credit through POST /v1/broker/credit, signed with the owner's key."""

    def __init__(self, *, client: OrderlyClient, accounts: AccountStore, keys: KeyService, token: str = "USDC") -> None:
        self._client = client
        self._accounts = accounts
        self._keys = keys
        self._token = token

    def __call__(self, record: DepositRecord) -> None:
        account = self._accounts.get_custody_account(user_id=record.user_id or "")
        if account is None:
            raise MirrorUnavailable(f"User {record.user_id} has no venue account")
        try:
            signer = self._keys.load_signer(account.account_id)
        except SecretBoxKeyError:
            raise
        except (SecretBoxError, ValueError) as exc:
            raise MirrorUnavailable(f"Signing key for account {account.account_id} is unusable: {exc}") from exc
        if signer is None:
            raise MirrorUnavailable(f"No valid signing key for account {account.account_id}")
        self._client.credit_account(account.account_id, record.amount, token=self._token, signer=signer)


def check_record(record: DepositRecord) -> DepositRecord:
    """Reject records that violate the state machine's invariants."""
    problems = []
    if record.status not in DEPOSIT_STATUSES:
        problems.append(f"unknown status {record.status!r}")
    if record.amount <= 0:
        problems.append("non-positive amount")
    if record.confirmations < 0 or record.required_confirmations < 1:
        problems.append("invalid confirmation counts")
    if record.retry_count < 0 or record.reset_count < 0:
        problems.append("negative counters")
    if record.status == "credited" and not (record.orderly_confirmed and record.internal_credited_at):
        problems.append("credited without both credits applied")
    if problems:
        raise CorruptRecordError(f"Deposit {record.tx_hash}: {', '.join(problems)}")
    return record


class DepositLedger:
    def __init__(
        self,
        *,
        deposits: DepositStore,
        ledger: LedgerStore,
        chain: ChainClient,
        mirror: CreditMirror,
        settings: DepositSettings,
        recipient: str,
        token_address: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._deposits = deposits
        self._ledger = ledger
        self._chain = chain
        self._mirror = mirror
        self.settings = settings
        self.recipient = recipient
        self.token_address = token_address
        self._clock = clock

    # ---- detection

    def record_transfers(self, events: list[TransferEvent], *, head: int) -> TickReport:
        """Record newly seen transfers. Duplicates and dust are skipped."""
        report = TickReport()
        for event in events:
            record = self._new_record(event, head=head)
            if record is None:
                continue
            if self._deposits.insert_deposit(record=record):
                report.recorded.append(record.tx_hash)
                logger.info(
                    "New deposit %s: %s from %s (%s, %d/%d confirmations)",
                    record.tx_hash,
                    record.amount,
                    record.from_address,
                    record.status,
                    record.confirmations,
                    record.required_confirmations,
                )
            else:
                logger.debug("Deposit %s already recorded", record.tx_hash)
        return report

    def _new_record(
        self,
        event: TransferEvent,
        *,
        head: int,
        user_id: Optional[str] = None,
    ) -> Optional[DepositRecord]:
        if event.amount < self.settings.min_amount:
            logger.warning(
                "Ignoring deposit %s: %s below minimum %s",
                event.tx_hash,
                event.amount,
                self.settings.min_amount,
            )
            return None

        now = self._clock()
        confirmations = max(0, head - event.block_number)
        required = self.settings.required_confirmations
        confirmed = confirmations >= required
        return DepositRecord(
            tx_hash=event.tx_hash,
            amount=event.amount,
            from_address=event.from_address,
            to_address=event.to_address,
            block_number=event.block_number,
            confirmations=confirmations,
            required_confirmations=required,
            status="confirmed" if confirmed else "pending",
            user_id=user_id,
            detected_at=now,
            confirmed_at=now if confirmed else None,
        )

    def scan(self, scanner: ChainScanner) -> TickReport:
        """Run one scan pass; each chunk is recorded before the cursor moves."""
        report = TickReport()

        def on_chunk(events: list[TransferEvent], chunk_end: int) -> None:
            report.extend(self.record_transfers(events, head=head))

        try:
            head = self._chain.block_number()
            scanner.scan_new(on_chunk, head=head)
        except (ChainRpcError, CursorGapError) as exc:
            logger.warning("Deposit scan failed: %s", exc)
            report.errors.append(str(exc))
        return report

    # ---- confirmation tracking

    def refresh_confirmations(self, *, head: int) -> TickReport:
        report = TickReport()
        for record in self._deposits.list_deposits(statuses=ACTIVE_STATUSES):
            check_record(record)
            try:
                receipt = self._chain.get_receipt(record.tx_hash)
            except ChainRpcError as exc:
                logger.warning("Receipt lookup failed for %s: %s", record.tx_hash, exc)
                report.errors.append(f"{record.tx_hash}: {exc}")
                continue

            if receipt is None:
                logger.warning("No receipt for deposit %s; keeping it for the next tick", record.tx_hash)
                continue

            confirmations = max(0, head - receipt.block_number)
            updated = replace(record, confirmations=confirmations)
            if record.status == "pending" and confirmations >= record.required_confirmations:
                updated = replace(updated, status="confirmed", confirmed_at=self._clock())

            if updated == record:
                continue
            if not self._deposits.update_deposit(record=updated, expected_status=record.status):
                logger.info("Deposit %s changed concurrently; skipping confirmation update", record.tx_hash)
                continue
            if updated.status != record.status:
                report.confirmed.append(record.tx_hash)
                logger.info(
                    "Deposit %s confirmed (%d/%d)",
                    record.tx_hash,
                    confirmations,
                    record.required_confirmations,
                )
        return report

    # ---- crediting

    def credit_confirmed(self) -> TickReport:
        report = TickReport()
        for record in self._deposits.list_deposits(statuses=("confirmed",)):
            check_record(record)
            if record.orderly_confirmed:
                continue
            if not record.is_owned:
                logger.debug("Deposit %s is unclaimed; not crediting", record.tx_hash)
                continue
            self._credit(record, report)
        return report

    def _credit(self, record: DepositRecord, report: TickReport) -> None:
        if self._ledger.apply_credit(user_id=record.user_id, amount=record.amount, reference=record.tx_hash):
            logger.info("Internal credit of %s to user %s for %s", record.amount, record.user_id, record.tx_hash)

        if record.internal_credited_at is None:
            marked = replace(record, internal_credited_at=self._clock())
            if not self._deposits.update_deposit(record=marked, expected_status="confirmed"):
                logger.info("Deposit %s changed concurrently; skipping credit", record.tx_hash)
                return
            record = marked

        try:
            self._mirror(record)
        except DuplicateRequestError:
            logger.info("Venue already applied credit for %s", record.tx_hash)
        except (OrderlyApiError, MirrorUnavailable) as exc:
            self._record_mirror_failure(record, exc, report)
            return
        except FATAL_ERRORS:
            raise
        except Exception as exc:
            logger.exception("Unexpected error mirroring credit for %s", record.tx_hash)
            self._record_mirror_failure(record, exc, report)
            return

        credited = replace(
            record,
            status="credited",
            orderly_confirmed=True,
            credited_at=self._clock(),
            error_message=None,
        )
        if self._deposits.update_deposit(record=credited, expected_status="confirmed"):
            report.credited.append(record.tx_hash)
            logger.info("Deposit %s credited (%s to user %s)", record.tx_hash, record.amount, record.user_id)

    def _record_mirror_failure(self, record: DepositRecord, exc: Exception, report: TickReport) -> None:
        retry_count = record.retry_count + 1
        clock_skew = isinstance(exc, ClockSkewError)
        retryable = clock_skew or isinstance(exc, MirrorUnavailable) or getattr(exc, "retryable", True)
        give_up = not retryable or retry_count >= self.settings.max_retries

        updated = replace(
            record,
            retry_count=retry_count,
            error_message=str(exc),
            status="failed" if give_up else "confirmed",
        )
        if not self._deposits.update_deposit(record=updated, expected_status="confirmed"):
            logger.info("Deposit %s changed concurrently; dropping failure update", record.tx_hash)
            return

        if give_up:
            report.failed.append(record.tx_hash)
            self._alert(
                report,
                updated,
                title="Deposit credit failed",
                message=(
                    f"Deposit {record.tx_hash} ({record.amount} for user {record.user_id}) moved to failed "
                    f"after {retry_count} attempt(s): {exc}. Internal balance already credited; "
                    "venue credit needs operator action."
                ),
            )
            return

        report.retried.append(record.tx_hash)
        logger.warning("Venue credit failed for %s (attempt %d): %s", record.tx_hash, retry_count, exc)
        if clock_skew:
            self._alert(report, updated, title="Clock skew rejected deposit credit", message=str(exc))
        elif retry_count >= self.settings.alert_threshold:
            self._alert(
                report,
                updated,
                title="Deposit credit retrying",
                message=(
                    f"Deposit {record.tx_hash} ({record.amount} for user {record.user_id}) "
                    f"failed {retry_count} venue credit attempt(s): {exc}"
                ),
                severity="warning",
            )

    def _alert(
        self,
        report: TickReport,
        record: DepositRecord,
        *,
        title: str,
        message: str,
        severity: Literal["info", "warning", "error"] = "error",
    ) -> None:
        logger.error("%s: %s", title, message)
        report.alerts.append(DepositAlert(tx_hash=record.tx_hash, title=title, message=message, severity=severity))

    # ---- loop entrypoint

    def tick(self, *, head: Optional[int] = None) -> TickReport:
        """Refresh confirmations, then credit whatever is confirmed, in one pass."""
        report = TickReport()
        if head is None:
            try:
                head = self._chain.block_number()
            except ChainRpcError as exc:
                logger.warning("Cannot read chain head: %s", exc)
                report.errors.append(str(exc))
                return report
        report.extend(self.refresh_confirmations(head=head))
        report.extend(self.credit_confirmed())
        return report

    # ---- operator actions

    def get(self, tx_hash: str) -> DepositRecord:
        record = self._deposits.get_deposit(tx_hash=tx_hash.lower())
        if record is None:
            raise DepositNotFoundError(f"No deposit recorded for {tx_hash}")
        return check_record(record)

    def claim(self, tx_hash: str, user_id: str) -> DepositRecord:
        """
        Attach an owner to a deposit.

        If the transfer has not been seen by the scanner yet, it is verified
        from its receipt (recipient and token must match) and recorded.

        Raises:
            ClaimError: Owned by another user, not a deposit, or below minimum
        """
        tx_hash = tx_hash.lower()
        record = self._deposits.get_deposit(tx_hash=tx_hash)
        if record is None:
            return self._record_claimed(tx_hash, user_id)

        check_record(record)
        if record.user_id == user_id:
            return record
        if record.is_owned:
            raise ClaimError(f"Deposit {tx_hash} is already claimed by another user")

        claimed = replace(record, user_id=user_id)
        if not self._deposits.update_deposit(record=claimed, expected_status=record.status):
            raise ClaimError(f"Deposit {tx_hash} changed while claiming; retry")
        logger.info("Deposit %s claimed by user %s", tx_hash, user_id)
        return claimed

    def _record_claimed(self, tx_hash: str, user_id: str) -> DepositRecord:
        try:
            receipt = self._chain.get_receipt(tx_hash)
            head = self._chain.block_number()
        except ChainRpcError as exc:
            raise ClaimError(f"Cannot verify {tx_hash} right now: {exc}") from exc

        if receipt is None or receipt.status != 1:
            raise ClaimError(f"Transaction {tx_hash} not found or not successful")

        recipient = self.recipient.lower()
        token = self.token_address.lower()
        matching = [
            t for t in receipt.transfers if t.to_address.lower() == recipient and t.token_address.lower() == token
        ]
        if not matching:
            raise ClaimError(f"Transaction {tx_hash} is not a token transfer to the deposit address")

        event = merge_transfers(matching, self.settings.token_decimals)[0]
        record = self._new_record(event, head=head, user_id=user_id)
        if record is None:
            raise ClaimError(f"Deposit {tx_hash} of {event.amount} is below the minimum {self.settings.min_amount}")

        if not self._deposits.insert_deposit(record=record):
            # The scanner recorded it in the meantime.
            return self.claim(tx_hash, user_id)
        logger.info("Deposit %s verified and claimed by user %s", tx_hash, user_id)
        return record

    def reset_failed(self, tx_hash: str) -> DepositRecord:
        """Move a failed record back to confirmed for another round of retries."""
        record = self.get(tx_hash)
        if record.status != "failed":
            raise ResetError(f"Deposit {tx_hash} is {record.status}, only failed deposits can be reset")
        if record.reset_count >= self.settings.max_resets:
            raise ResetError(f"Deposit {tx_hash} has used all {self.settings.max_resets} resets")

        reset = replace(
            record,
            status="confirmed",
            retry_count=0,
            reset_count=record.reset_count + 1,
            error_message=None,
        )
        if not self._deposits.update_deposit(record=reset, expected_status="failed"):
            raise ResetError(f"Deposit {tx_hash} changed while resetting; retry")
        logger.warning("Deposit %s reset to confirmed by operator (reset %d)", tx_hash, reset.reset_count)
        return reset
