"""EVM access for deposit detection.

`ChainClient` is the narrow surface the scanner and pipeline need: head block,
ERC-20 Transfer logs into one address, and transaction receipts.
`Web3ChainClient` implements it over JSON-RPC with web3.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import requests
from eth_utils import keccak, to_bytes, to_checksum_address
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

logger = logging.getLogger(__name__)

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()


class ChainRpcError(Exception):
    """RPC call failed. Per-record failures are logged and retried next tick."""


@dataclass(frozen=True)
class TransferLog:
    tx_hash: str
    token_address: str
    from_address: str
    to_address: str
    value: int  # token base units
    block_number: int
    log_index: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    status: int  # 1 success, 0 reverted
    transfers: tuple[TransferLog, ...] = ()


class ChainClient(Protocol):
    def block_number(self) -> int:
        """Current chain head."""

    def get_transfer_logs(
        self,
        *,
        token_address: str,
        to_address: str,
        from_block: int,
        to_block: int,
    ) -> Sequence[TransferLog]:
        """Transfer events of one token into one address, inclusive block range."""

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt for a mined transaction, or None if unknown to the node."""


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "00" * 12 + to_checksum_address(address)[2:].lower()


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=str(value))


def _as_hex(value: Any) -> str:
    raw = _as_bytes(value).hex()
    return raw if raw.startswith("0x") else "0x" + raw


def decode_transfer_log(log: Any) -> Optional[TransferLog]:
    """Decode a raw log into a TransferLog; None for anything that is not an ERC-20 Transfer."""
    topics = log["topics"]
    if len(topics) != 3 or _as_hex(topics[0]).lower() != TRANSFER_TOPIC:
        return None
    return TransferLog(
        tx_hash=_as_hex(log["transactionHash"]).lower(),
        token_address=to_checksum_address(log["address"]),
        from_address=to_checksum_address(_as_bytes(topics[1])[-20:]),
        to_address=to_checksum_address(_as_bytes(topics[2])[-20:]),
        value=int.from_bytes(_as_bytes(log["data"]), "big"),
        block_number=int(log["blockNumber"]),
        log_index=int(log["logIndex"]),
    )


class Web3ChainClient:
    """ChainClient over an HTTP JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, *, timeout: float = 30.0, web3: Web3 | None = None) -> None:
        self._w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    def block_number(self) -> int:
        try:
            return int(self._w3.eth.block_number)
        except (Web3Exception, requests.RequestException, ValueError) as exc:
            raise ChainRpcError(f"eth_blockNumber failed: {exc}") from exc

    def get_transfer_logs(
        self,
        *,
        token_address: str,
        to_address: str,
        from_block: int,
        to_block: int,
    ) -> Sequence[TransferLog]:
        log_filter = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": to_checksum_address(token_address),
            "topics": [TRANSFER_TOPIC, None, address_topic(to_address)],
        }
        try:
            raw_logs = self._w3.eth.get_logs(log_filter)
        except (Web3Exception, requests.RequestException, ValueError) as exc:
            raise ChainRpcError(f"eth_getLogs {from_block}-{to_block} failed: {exc}") from exc

        transfers = []
        for raw in raw_logs:
            decoded = decode_transfer_log(raw)
            if decoded is not None:
                transfers.append(decoded)
        return transfers

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, requests.RequestException, ValueError) as exc:
            raise ChainRpcError(f"eth_getTransactionReceipt {tx_hash} failed: {exc}") from exc

        if receipt is None:
            return None

        transfers = tuple(
            decoded for decoded in (decode_transfer_log(log) for log in receipt["logs"]) if decoded is not None
        )
        return TxReceipt(
            tx_hash=_as_hex(receipt["transactionHash"]).lower(),
            block_number=int(receipt["blockNumber"]),
            status=int(receipt.get("status", 1)),
            transfers=transfers,
        )
