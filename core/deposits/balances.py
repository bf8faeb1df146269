"""User-facing balance view.

`available` only counts funds that are settled on both sides. A deposit that
was credited internally but whose venue credit has not landed yet is held
back and shown as processing instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from core.persistence.interfaces import DepositStore, LedgerStore
from core.types import DepositStatus


@dataclass(frozen=True)
class ProcessingDeposit:
    tx_hash: str
    amount: Decimal
    status: DepositStatus
    confirmations: int
    required_confirmations: int


@dataclass(frozen=True)
class BalanceView:
    user_id: str
    available: Decimal
    total_deposits: Decimal
    processing: tuple[ProcessingDeposit, ...] = ()
    on_hold: Decimal = Decimal("0")

    @property
    def processing_total(self) -> Decimal:
        return sum((item.amount for item in self.processing), Decimal("0"))


def get_balance_view(user_id: str, *, ledger: LedgerStore, deposits: DepositStore) -> BalanceView:
    account = ledger.get_ledger_account(user_id=user_id)
    balance = account.balance if account is not None else Decimal("0")
    total = account.total_deposits if account is not None else Decimal("0")

    unsettled = deposits.list_deposits(statuses=("pending", "confirmed", "failed"), user_id=user_id)

    # Internally credited but not mirrored yet: in the ledger balance, not spendable.
    # The ledger entry is written before the record is stamped, so check both.
    on_hold = sum(
        (
            record.amount
            for record in unsettled
            if record.internal_credited_at is not None or ledger.has_credit(reference=record.tx_hash)
        ),
        Decimal("0"),
    )
    processing = tuple(
        ProcessingDeposit(
            tx_hash=record.tx_hash,
            amount=record.amount,
            status=record.status,
            confirmations=record.confirmations,
            required_confirmations=record.required_confirmations,
        )
        for record in unsettled
        if record.status in ("pending", "confirmed")
    )

    return BalanceView(
        user_id=user_id,
        available=max(balance - on_hold, Decimal("0")),
        total_deposits=total,
        processing=processing,
        on_hold=on_hold,
    )
