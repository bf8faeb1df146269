from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

KeyScope = Literal["read", "trading", "asset"]
KEY_SCOPES: frozenset[str] = frozenset({"read", "trading", "asset"})
DepositStatus = Literal["pending", "confirmed", "credited", "failed"]

DEPOSIT_STATUSES: frozenset[str] = frozenset({"pending", "confirmed", "credited", "failed"})
TERMINAL_DEPOSIT_STATUSES: frozenset[str] = frozenset({"credited", "failed"})


def utc_now() -> datetime:
    """Return a timezone-aware timestamp in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Identity:
    """A custodial wallet registered with one broker on the venue."""

    address: str
    chain_id: int
    broker_id: str
    account_id: str


@dataclass(frozen=True)
class CustodyAccount:
    """User-owned custodial wallet plus its venue account id.

    The wallet private key is stored sealed (see core.security.secret_box).
    """

    user_id: str
    address: str
    account_id: str
    broker_id: str
    chain_id: int
    encrypted_wallet_key: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SigningKey:
    """Ed25519 request-signing key granted to one venue account.

    Rotation inserts a new key and stamps `superseded_at` on the old one;
    rows are never edited otherwise.
    """

    account_id: str
    public_key: str  # base58, without the "ed25519:" prefix
    encrypted_private_key: str
    scope: KeyScope
    expires_at: datetime
    created_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None

    @property
    def orderly_key(self) -> str:
        return f"ed25519:{self.public_key}"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at


@dataclass(frozen=True)
class CanonicalRequest:
    """Inputs to one request signature. Never persisted."""

    timestamp: int  # ms epoch
    method: str
    path: str
    body: Optional[str] = None

    def to_message(self) -> str:
        return f"{self.timestamp}{self.method}{self.path}{self.body or ''}"


@dataclass(frozen=True)
class TransferEvent:
    """Token transfer into the custodial address, as seen on chain."""

    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    block_number: int
    log_index: int = 0


@dataclass(frozen=True)
class DepositRecord:
    tx_hash: str
    amount: Decimal
    from_address: str
    to_address: str
    block_number: int
    confirmations: int
    required_confirmations: int
    status: DepositStatus = "pending"
    orderly_confirmed: bool = False
    retry_count: int = 0
    reset_count: int = 0
    user_id: Optional[str] = None
    error_message: Optional[str] = None
    detected_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    internal_credited_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEPOSIT_STATUSES

    @property
    def is_owned(self) -> bool:
        return bool(self.user_id)


@dataclass(frozen=True)
class LedgerAccount:
    user_id: str
    balance: Decimal = Decimal("0")
    total_deposits: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScanCursor:
    name: str
    last_scanned_block: int
    updated_at: Optional[datetime] = None
