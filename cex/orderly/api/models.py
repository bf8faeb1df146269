"""Response models for the Orderly REST API.

Responses share one envelope:

    {"success": true, "data": {...}, "timestamp": ...}
    {"success": false, "code": -1002, "message": "..."}

Models are validated at the client boundary; everything past the client works
with these typed values. Unknown fields are ignored so venue additions don't
break parsing.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _VenueModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Envelope(_VenueModel):
    success: bool
    data: Any = None
    code: Optional[int] = None
    message: Optional[str] = None
    timestamp: Optional[int] = None


class BrokerInfo(_VenueModel):
    broker_id: str
    broker_name: Optional[str] = None


class BrokerList(_VenueModel):
    rows: list[BrokerInfo] = Field(default_factory=list)


class AccountSummary(_VenueModel):
    account_id: str
    broker_id: Optional[str] = None
    user_address: Optional[str] = None


class AccountList(_VenueModel):
    rows: list[AccountSummary] = Field(default_factory=list)


class RegistrationNonce(_VenueModel):
    registration_nonce: str


class RegisteredAccount(_VenueModel):
    account_id: str
    user_id: Optional[int] = None


class KeyInfo(_VenueModel):
    orderly_key: str
    scope: Optional[str] = None
    expiration: Optional[int] = None
    key_status: Optional[str] = None


class AddedKey(_VenueModel):
    id: Optional[int] = None
    orderly_key: str


class NonceResponse(_VenueModel):
    """Withdraw / settle nonces. The venue names the field per endpoint."""

    withdraw_nonce: Optional[int] = None
    settle_nonce: Optional[int] = None

    @property
    def value(self) -> int:
        nonce = self.withdraw_nonce if self.withdraw_nonce is not None else self.settle_nonce
        if nonce is None:
            raise ValueError("Nonce response carried no nonce")
        return int(nonce)


class WithdrawAccepted(_VenueModel):
    withdraw_id: Optional[int] = None


class SettleAccepted(_VenueModel):
    settle_pnl_id: Optional[int] = None


class OrderAccepted(_VenueModel):
    order_id: int
    client_order_id: Optional[str] = None
    order_type: Optional[str] = None
    order_price: Optional[float] = None
    order_quantity: Optional[float] = None


class CreditAccepted(_VenueModel):
    """Broker-side balance credit mirror."""

    id: Optional[int] = None
    account_id: Optional[str] = None
    amount: Optional[str] = None
