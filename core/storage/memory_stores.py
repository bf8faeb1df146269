from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from core.persistence.interfaces import (
    AccountStore,
    CursorStore,
    DepositStore,
    LedgerStore,
    SigningKeyStore,
)
from core.types import CustodyAccount, DepositRecord, LedgerAccount, SigningKey, utc_now


class InMemoryStores(DepositStore, LedgerStore, SigningKeyStore, AccountStore, CursorStore):
    """Process-local implementation of every custody store.

    Used by tests and local development. One lock guards all maps, so the scan
    and credit loops (running in worker threads) see consistent state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._deposits: dict[str, DepositRecord] = {}
        self._ledger: dict[str, LedgerAccount] = {}
        self._ledger_refs: dict[str, tuple[str, Decimal]] = {}
        self._keys: dict[str, list[SigningKey]] = {}
        self._accounts: dict[str, CustodyAccount] = {}
        self._cursors: dict[str, int] = {}

    # ---- DepositStore

    def insert_deposit(self, *, record: DepositRecord) -> bool:
        with self._lock:
            if record.tx_hash in self._deposits:
                return False
            self._deposits[record.tx_hash] = record
            return True

    def get_deposit(self, *, tx_hash: str) -> Optional[DepositRecord]:
        with self._lock:
            return self._deposits.get(tx_hash)

    def list_deposits(
        self,
        *,
        statuses: Sequence[str] | None = None,
        user_id: str | None = None,
        limit: int = 1000,
    ) -> Sequence[DepositRecord]:
        with self._lock:
            records = list(self._deposits.values())
        if statuses is not None:
            records = [r for r in records if r.status in statuses]
        if user_id is not None:
            records = [r for r in records if r.user_id == user_id]
        records.sort(key=lambda r: (r.block_number, r.tx_hash))
        return records[:limit]

    def update_deposit(self, *, record: DepositRecord, expected_status: str) -> bool:
        with self._lock:
            current = self._deposits.get(record.tx_hash)
            if current is None or current.status != expected_status:
                return False
            self._deposits[record.tx_hash] = record
            return True

    # ---- LedgerStore

    def apply_credit(self, *, user_id: str, amount: Decimal, reference: str) -> bool:
        with self._lock:
            if reference in self._ledger_refs:
                return False
            account = self._ledger.get(user_id) or LedgerAccount(user_id=user_id)
            self._ledger[user_id] = replace(
                account,
                balance=account.balance + amount,
                total_deposits=account.total_deposits + amount,
                updated_at=utc_now(),
            )
            self._ledger_refs[reference] = (user_id, amount)
            return True

    def has_credit(self, *, reference: str) -> bool:
        with self._lock:
            return reference in self._ledger_refs

    def get_ledger_account(self, *, user_id: str) -> Optional[LedgerAccount]:
        with self._lock:
            return self._ledger.get(user_id)

    # ---- SigningKeyStore

    def insert_signing_key(self, *, key: SigningKey) -> None:
        with self._lock:
            self._keys.setdefault(key.account_id, []).append(key)

    def get_current_signing_key(self, *, account_id: str) -> Optional[SigningKey]:
        with self._lock:
            for key in reversed(self._keys.get(account_id, [])):
                if key.superseded_at is None:
                    return key
        return None

    def supersede_signing_key(self, *, account_id: str, public_key: str, superseded_at: datetime) -> bool:
        with self._lock:
            keys = self._keys.get(account_id, [])
            for idx, key in enumerate(keys):
                if key.public_key == public_key and key.superseded_at is None:
                    keys[idx] = replace(key, superseded_at=superseded_at)
                    return True
        return False

    def list_signing_keys(self, *, account_id: str) -> Sequence[SigningKey]:
        with self._lock:
            return list(reversed(self._keys.get(account_id, [])))

    # ---- AccountStore

    def save_custody_account(self, *, account: CustodyAccount) -> None:
        with self._lock:
            if account.user_id in self._accounts:
                raise ValueError(f"User {account.user_id} already has a custodial account")
            self._accounts[account.user_id] = account

    def get_custody_account(self, *, user_id: str) -> Optional[CustodyAccount]:
        with self._lock:
            return self._accounts.get(user_id)

    def find_custody_account(self, *, address: str) -> Optional[CustodyAccount]:
        target = address.lower()
        with self._lock:
            for account in self._accounts.values():
                if account.address.lower() == target:
                    return account
        return None

    # ---- CursorStore

    def get_cursor(self, *, name: str) -> Optional[int]:
        with self._lock:
            return self._cursors.get(name)

    def set_cursor(self, *, name: str, block_number: int) -> None:
        with self._lock:
            self._cursors[name] = block_number
