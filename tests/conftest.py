"""Shared test fixtures for pytest.

Provides an in-memory store, a scripted chain, a master key and helpers for
building transfers, used across multiple test files.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from unittest.mock import Mock, patch

import pytest

from core.config import DepositSettings
from core.deposits.chain import TransferLog, TxReceipt
from core.security.secret_box import SecretBox
from core.storage.memory_stores import InMemoryStores

PLATFORM_WALLET = "0x1111111111111111111111111111111111111111"
USDC = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
SENDER = "0x2222222222222222222222222222222222222222"
MASTER_KEY_HEX = "00" * 31 + "01"


def make_log(
    tx_hash: str,
    *,
    value: int,
    block_number: int,
    log_index: int = 0,
    to_address: str = PLATFORM_WALLET,
    token_address: str = USDC,
    from_address: str = SENDER,
) -> TransferLog:
    """Transfer log with `value` in 6-decimal base units."""
    return TransferLog(
        tx_hash=tx_hash,
        token_address=token_address,
        from_address=from_address,
        to_address=to_address,
        value=value,
        block_number=block_number,
        log_index=log_index,
    )


class FakeChain:
    """Scripted ChainClient: a movable head, a list of logs and their receipts."""

    def __init__(self, head: int = 100) -> None:
        self.head = head
        self.logs: list[TransferLog] = []
        self.receipts: dict[str, TxReceipt] = {}
        self.log_queries: list[tuple[int, int]] = []

    def add_transfer(self, log: TransferLog, *, status: int = 1) -> None:
        self.logs.append(log)
        existing = self.receipts.get(log.tx_hash)
        transfers = (existing.transfers if existing else ()) + (log,)
        self.receipts[log.tx_hash] = TxReceipt(
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            status=status,
            transfers=transfers,
        )

    def block_number(self) -> int:
        return self.head

    def get_transfer_logs(
        self,
        *,
        token_address: str,
        to_address: str,
        from_block: int,
        to_block: int,
    ) -> Sequence[TransferLog]:
        self.log_queries.append((from_block, to_block))
        return [
            log
            for log in self.logs
            if from_block <= log.block_number <= to_block
            and log.to_address.lower() == to_address.lower()
            and log.token_address.lower() == token_address.lower()
        ]

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return self.receipts.get(tx_hash)


@pytest.fixture
def secret_box() -> SecretBox:
    return SecretBox.from_hex(MASTER_KEY_HEX)


@pytest.fixture
def stores() -> InMemoryStores:
    return InMemoryStores()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(head=100)


@pytest.fixture
def deposit_settings() -> DepositSettings:
    return DepositSettings(required_confirmations=12, alert_threshold=3, max_retries=10, max_resets=3)


@pytest.fixture
def fixed_clock() -> Any:
    """Clock frozen at 2024-01-01 00:00 UTC."""
    return lambda: datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_db_engine() -> Mock:
    """Mock SQLAlchemy engine for testing database operations."""
    mock_engine = Mock()
    mock_conn = Mock()
    mock_result = Mock()
    mock_result.rowcount = 1
    mock_result.fetchone.return_value = None
    mock_result.fetchall.return_value = []
    mock_conn.execute.return_value = mock_result
    mock_engine.begin.return_value.__enter__ = Mock(return_value=mock_conn)
    mock_engine.begin.return_value.__exit__ = Mock(return_value=False)
    return mock_engine


@pytest.fixture
def mock_postgres_stores(mock_db_engine: Mock) -> Any:
    """PostgresStores with a mocked database engine; `text()` returns the SQL string."""
    from core.storage.postgres.config import PostgresConfig
    from core.storage.postgres.stores import PostgresStores

    stores = PostgresStores(config=PostgresConfig(database_url="postgresql://fake"))

    with patch.object(stores, "_get_engine", return_value=mock_db_engine), patch.object(
        stores, "_require_sqlalchemy", return_value=(Mock(), lambda sql: sql)
    ):
        yield stores
