from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from core.types import CustodyAccount, DepositRecord, LedgerAccount, SigningKey


class CorruptRecordError(RuntimeError):
    """A persisted row cannot be turned back into a valid domain object.

    Never handled per record: the process stops so an operator can look.
    """


class DepositStore(Protocol):
    def insert_deposit(self, *, record: DepositRecord) -> bool:
        """Insert a new deposit. Returns False if tx_hash is already recorded."""

    def get_deposit(self, *, tx_hash: str) -> Optional[DepositRecord]:
        """Fetch one deposit by transaction hash."""

    def list_deposits(
        self,
        *,
        statuses: Sequence[str] | None = None,
        user_id: str | None = None,
        limit: int = 1000,
    ) -> Sequence[DepositRecord]:
        """List deposits (oldest block first) with optional filters."""

    def update_deposit(self, *, record: DepositRecord, expected_status: str) -> bool:
        """Replace a deposit's mutable fields if its stored status still equals expected_status.

        Returns False when another writer moved the record first.
        """


class LedgerStore(Protocol):
    def apply_credit(self, *, user_id: str, amount: Decimal, reference: str) -> bool:
        """Credit a user's internal balance exactly once per reference.

        Returns True if the balance changed, False if the reference was already applied.
        """

    def has_credit(self, *, reference: str) -> bool:
        """Whether a credit with this reference was applied."""

    def get_ledger_account(self, *, user_id: str) -> Optional[LedgerAccount]:
        """Fetch a user's internal balance."""


class SigningKeyStore(Protocol):
    def insert_signing_key(self, *, key: SigningKey) -> None:
        """Persist a new request-signing key."""

    def get_current_signing_key(self, *, account_id: str) -> Optional[SigningKey]:
        """Newest key for the account that has not been superseded (expiry not checked)."""

    def supersede_signing_key(self, *, account_id: str, public_key: str, superseded_at: datetime) -> bool:
        """Stamp superseded_at on a key. Returns False if it was already superseded."""

    def list_signing_keys(self, *, account_id: str) -> Sequence[SigningKey]:
        """All keys ever granted to the account, newest first."""


class AccountStore(Protocol):
    def save_custody_account(self, *, account: CustodyAccount) -> None:
        """Insert a custodial account (one per user)."""

    def get_custody_account(self, *, user_id: str) -> Optional[CustodyAccount]:
        """Fetch a user's custodial account."""

    def find_custody_account(self, *, address: str) -> Optional[CustodyAccount]:
        """Fetch the custodial account that owns a wallet address."""


class CursorStore(Protocol):
    def get_cursor(self, *, name: str) -> Optional[int]:
        """Last fully processed block for a named scanner."""

    def set_cursor(self, *, name: str, block_number: int) -> None:
        """Persist the last fully processed block."""
