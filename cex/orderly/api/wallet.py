"""
Orderly Wallet Authentication (EIP-712)
=======================================

Account id derivation and typed-data signatures for the four wallet-signed
Orderly messages: Registration, AddOrderlyKey, Withdraw, SettlePnl.

Account id (bit-for-bit):

    account_id = keccak256(abi.encode(address, keccak256(utf8(broker_id))))

abi.encode of (address, bytes32) is 64 bytes: the 20-byte address left-padded
with 12 zero bytes, then the 32-byte broker hash.

Schemas are reproduced verbatim; adding, dropping or reordering a field
changes the signed hash and the venue rejects the signature.

Reference:
- https://orderly.network/docs/build-on-omnichain/user-flows/wallet-authentication
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Literal, Mapping, Union

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import is_hex_address, keccak, to_bytes, to_checksum_address

from core.types import Identity

# Off-chain "null signal" verifying contract used by Registration, AddOrderlyKey and SettlePnl
OFF_CHAIN_VERIFYING_CONTRACT = "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC"

DOMAIN_NAME = "Orderly"
DOMAIN_VERSION = "1"
DEFAULT_KEY_EXPIRATION_DAYS = 365

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

MESSAGE_TYPES: dict[str, list[dict[str, str]]] = {
    "Registration": [
        {"name": "brokerId", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "timestamp", "type": "uint64"},
        {"name": "registrationNonce", "type": "uint256"},
    ],
    "AddOrderlyKey": [
        {"name": "brokerId", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "orderlyKey", "type": "string"},
        {"name": "scope", "type": "string"},
        {"name": "timestamp", "type": "uint64"},
        {"name": "expiration", "type": "uint64"},
    ],
    "Withdraw": [
        {"name": "brokerId", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "receiver", "type": "address"},
        {"name": "token", "type": "string"},
        {"name": "amount", "type": "uint256"},
        {"name": "withdrawNonce", "type": "uint64"},
        {"name": "timestamp", "type": "uint64"},
    ],
    "SettlePnl": [
        {"name": "brokerId", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "settleNonce", "type": "uint64"},
        {"name": "timestamp", "type": "uint64"},
    ],
}

MessageKind = Literal["Registration", "AddOrderlyKey", "Withdraw", "SettlePnl"]


class UnsupportedMessageKind(ValueError):
    pass


class InvalidPrivateKeyError(ValueError):
    pass


@dataclass(frozen=True)
class RegistrationMessage:
    brokerId: str
    chainId: int
    timestamp: int
    registrationNonce: int

    kind = "Registration"


@dataclass(frozen=True)
class AddOrderlyKeyMessage:
    brokerId: str
    chainId: int
    orderlyKey: str
    scope: str
    timestamp: int
    expiration: int

    kind = "AddOrderlyKey"


@dataclass(frozen=True)
class WithdrawMessage:
    brokerId: str
    chainId: int
    receiver: str
    token: str
    amount: int  # token base units
    withdrawNonce: int
    timestamp: int

    kind = "Withdraw"


@dataclass(frozen=True)
class SettlePnlMessage:
    brokerId: str
    chainId: int
    settleNonce: int
    timestamp: int

    kind = "SettlePnl"


TypedMessage = Union[RegistrationMessage, AddOrderlyKeyMessage, WithdrawMessage, SettlePnlMessage]

_MESSAGE_CLASSES: dict[str, type] = {
    "Registration": RegistrationMessage,
    "AddOrderlyKey": AddOrderlyKeyMessage,
    "Withdraw": WithdrawMessage,
    "SettlePnl": SettlePnlMessage,
}


@dataclass(frozen=True)
class SignedMessage:
    message: TypedMessage
    signature: str  # 0x-prefixed 65-byte hex
    user_address: str

    def to_request(self) -> dict[str, Any]:
        """Body for register_account / orderly_key / withdraw_request / settle_pnl."""
        return {
            "message": message_to_dict(self.message),
            "signature": self.signature,
            "userAddress": self.user_address,
        }


def compute_account_id(address: str, broker_id: str) -> str:
    """
    Derive the venue account id for (wallet address, broker id).

    Returns:
        "0x" + 64 lowercase hex chars
    """
    if not is_hex_address(address):
        raise ValueError(f"Invalid EVM address: {address!r}")
    if not broker_id:
        raise ValueError("broker_id is required")

    broker_hash = keccak(text=broker_id)
    encoded = abi_encode(["address", "bytes32"], [to_checksum_address(address), broker_hash])
    return "0x" + keccak(encoded).hex()


def build_message(kind: str, fields: Mapping[str, Any]) -> TypedMessage:
    """Build a typed message variant from a field mapping, rejecting extra or missing fields."""
    message_cls = _MESSAGE_CLASSES.get(kind)
    if message_cls is None:
        raise UnsupportedMessageKind(f"Unsupported typed message kind: {kind!r}")

    expected = [field["name"] for field in MESSAGE_TYPES[kind]]
    unknown = sorted(set(fields) - set(expected))
    missing = [name for name in expected if name not in fields]
    if unknown or missing:
        raise ValueError(f"{kind} fields mismatch: missing={missing} unknown={unknown}")
    return message_cls(**{name: fields[name] for name in expected})


def message_to_dict(message: TypedMessage) -> dict[str, Any]:
    """Field values in schema order."""
    values = asdict(message)
    return {field["name"]: values[field["name"]] for field in MESSAGE_TYPES[message.kind]}


def build_typed_data(message: TypedMessage, *, verifying_contract: str) -> dict[str, Any]:
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            message.kind: MESSAGE_TYPES[message.kind],
        },
        "primaryType": message.kind,
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": message.chainId,
            "verifyingContract": to_checksum_address(verifying_contract),
        },
        "message": message_to_dict(message),
    }


def verifying_contract_for(kind: str, ledger_address: str | None = None) -> str:
    """Withdraw is verified by the Ledger contract; everything else off-chain."""
    if kind == "Withdraw":
        if not ledger_address:
            raise ValueError("Withdraw signatures require the venue ledger contract address")
        return ledger_address
    if kind not in MESSAGE_TYPES:
        raise UnsupportedMessageKind(f"Unsupported typed message kind: {kind!r}")
    return OFF_CHAIN_VERIFYING_CONTRACT


def _now_ms() -> int:
    return int(time.time() * 1000)


class OrderlyWallet:
    """
    EVM wallet that signs Orderly typed-data messages.

    The private key lives only on this object; callers construct it for the
    duration of one operation and drop it afterwards.
    """

    def __init__(self, private_key: str, *, ledger_address: str | None = None) -> None:
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise InvalidPrivateKeyError("Wallet private key must be a 32-byte hex string") from exc
        self.ledger_address = ledger_address

    @property
    def address(self) -> str:
        return self._account.address

    def identity(self, *, broker_id: str, chain_id: int) -> Identity:
        return Identity(
            address=self.address,
            chain_id=chain_id,
            broker_id=broker_id,
            account_id=compute_account_id(self.address, broker_id),
        )

    def sign_typed_message(self, kind: str, fields: Mapping[str, Any]) -> SignedMessage:
        """
        Sign one typed message.

        Args:
            kind: "Registration" | "AddOrderlyKey" | "Withdraw" | "SettlePnl"
            fields: Field values keyed by schema name

        Raises:
            UnsupportedMessageKind: Unknown kind
            ValueError: Fields do not match the schema
        """
        message = build_message(kind, fields)
        return self.sign_message(message)

    def sign_message(self, message: TypedMessage) -> SignedMessage:
        contract = verifying_contract_for(message.kind, self.ledger_address)
        signable = encode_typed_data(full_message=build_typed_data(message, verifying_contract=contract))
        signed = Account.sign_message(signable, private_key=self._account.key)
        signature = "0x" + bytes(signed.signature).hex()
        return SignedMessage(message=message, signature=signature, user_address=self.address)

    # ---- convenience builders

    def sign_registration(self, *, broker_id: str, chain_id: int, registration_nonce: int | str) -> SignedMessage:
        return self.sign_message(
            RegistrationMessage(
                brokerId=broker_id,
                chainId=chain_id,
                timestamp=_now_ms(),
                registrationNonce=int(registration_nonce),
            )
        )

    def sign_add_orderly_key(
        self,
        *,
        broker_id: str,
        chain_id: int,
        orderly_key: str,
        scope: str = "trading",
        expiration_days: int = DEFAULT_KEY_EXPIRATION_DAYS,
    ) -> SignedMessage:
        timestamp = _now_ms()
        formatted_key = orderly_key if orderly_key.startswith("ed25519:") else f"ed25519:{orderly_key}"
        return self.sign_message(
            AddOrderlyKeyMessage(
                brokerId=broker_id,
                chainId=chain_id,
                orderlyKey=formatted_key,
                scope=scope,
                timestamp=timestamp,
                expiration=timestamp + expiration_days * 24 * 60 * 60 * 1000,
            )
        )

    def sign_withdraw(
        self,
        *,
        broker_id: str,
        chain_id: int,
        receiver: str,
        token: str,
        amount: int,
        withdraw_nonce: int,
    ) -> SignedMessage:
        return self.sign_message(
            WithdrawMessage(
                brokerId=broker_id,
                chainId=chain_id,
                receiver=to_checksum_address(receiver),
                token=token,
                amount=int(amount),
                withdrawNonce=int(withdraw_nonce),
                timestamp=_now_ms(),
            )
        )

    def sign_settle_pnl(self, *, broker_id: str, chain_id: int, settle_nonce: int) -> SignedMessage:
        return self.sign_message(
            SettlePnlMessage(
                brokerId=broker_id,
                chainId=chain_id,
                settleNonce=int(settle_nonce),
                timestamp=_now_ms(),
            )
        )


def recover_signer(message: TypedMessage, signature: str, *, ledger_address: str | None = None) -> str:
    """Recover the wallet address that produced `signature` over `message`."""
    contract = verifying_contract_for(message.kind, ledger_address)
    signable = encode_typed_data(full_message=build_typed_data(message, verifying_contract=contract))
    return Account.recover_message(signable, signature=to_bytes(hexstr=signature))
