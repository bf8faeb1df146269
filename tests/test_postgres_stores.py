"""Tests for PostgresStores SQL behavior with a mocked engine."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from core.persistence.interfaces import CorruptRecordError
from core.types import DepositRecord

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _conn(engine: Mock) -> Mock:
    return engine.begin.return_value.__enter__.return_value


def _record(**overrides) -> DepositRecord:
    fields = dict(
        tx_hash="0xaa",
        amount=Decimal("25"),
        from_address="0x" + "22" * 20,
        to_address="0x" + "11" * 20,
        block_number=100,
        confirmations=12,
        required_confirmations=12,
        status="confirmed",
    )
    fields.update(overrides)
    return DepositRecord(**fields)


def _row(record: DepositRecord) -> tuple:
    return (
        record.tx_hash,
        str(record.amount),
        record.from_address,
        record.to_address,
        record.block_number,
        record.confirmations,
        record.required_confirmations,
        record.status,
        record.orderly_confirmed,
        record.retry_count,
        record.reset_count,
        record.user_id,
        record.error_message,
        NOW,
        None,
        None,
        None,
    )


def test_insert_deposit_reports_duplicate(mock_postgres_stores, mock_db_engine) -> None:
    conn = _conn(mock_db_engine)
    conn.execute.return_value.fetchone.return_value = None

    assert mock_postgres_stores.insert_deposit(record=_record()) is False
    sql = conn.execute.call_args.args[0]
    assert "ON CONFLICT (tx_hash) DO NOTHING" in sql


def test_insert_deposit_new_row(mock_postgres_stores, mock_db_engine) -> None:
    _conn(mock_db_engine).execute.return_value.fetchone.return_value = ("0xaa",)
    assert mock_postgres_stores.insert_deposit(record=_record()) is True


def test_update_deposit_is_conditional_on_status(mock_postgres_stores, mock_db_engine) -> None:
    conn = _conn(mock_db_engine)
    conn.execute.return_value.rowcount = 0

    updated = mock_postgres_stores.update_deposit(record=_record(status="credited"), expected_status="confirmed")

    assert updated is False
    sql, params = conn.execute.call_args.args
    assert "AND status = :expected_status" in sql
    assert params["expected_status"] == "confirmed"
    assert params["status"] == "credited"


def test_get_deposit_maps_row(mock_postgres_stores, mock_db_engine) -> None:
    expected = _record(user_id="alice")
    _conn(mock_db_engine).execute.return_value.fetchone.return_value = _row(expected)

    record = mock_postgres_stores.get_deposit(tx_hash="0xaa")

    assert record.amount == Decimal("25")
    assert record.user_id == "alice"
    assert record.detected_at == NOW


def test_unknown_status_row_is_corrupt(mock_postgres_stores, mock_db_engine) -> None:
    _conn(mock_db_engine).execute.return_value.fetchone.return_value = _row(_record(status="lost"))

    with pytest.raises(CorruptRecordError):
        mock_postgres_stores.get_deposit(tx_hash="0xaa")


def test_unparseable_amount_is_corrupt(mock_postgres_stores, mock_db_engine) -> None:
    row = list(_row(_record()))
    row[1] = "not-a-number"
    _conn(mock_db_engine).execute.return_value.fetchone.return_value = tuple(row)

    with pytest.raises(CorruptRecordError):
        mock_postgres_stores.get_deposit(tx_hash="0xaa")


def test_list_deposits_filters(mock_postgres_stores, mock_db_engine) -> None:
    conn = _conn(mock_db_engine)

    mock_postgres_stores.list_deposits(statuses=("pending", "confirmed"), user_id="alice", limit=10)

    sql, params = conn.execute.call_args.args
    assert "status = ANY(:statuses)" in sql
    assert "user_id = :user_id" in sql
    assert params == {"statuses": ["pending", "confirmed"], "user_id": "alice", "limit": 10}


def test_apply_credit_skips_balance_for_known_reference(mock_postgres_stores, mock_db_engine) -> None:
    conn = _conn(mock_db_engine)
    conn.execute.return_value.fetchone.return_value = None

    assert mock_postgres_stores.apply_credit(user_id="alice", amount=Decimal("25"), reference="0xaa") is False
    assert conn.execute.call_count == 1


def test_apply_credit_updates_balance_in_same_transaction(mock_postgres_stores, mock_db_engine) -> None:
    conn = _conn(mock_db_engine)
    conn.execute.return_value.fetchone.return_value = (1,)

    assert mock_postgres_stores.apply_credit(user_id="alice", amount=Decimal("25"), reference="0xaa") is True
    assert conn.execute.call_count == 2
    assert mock_db_engine.begin.call_count == 1
    assert "ledger_accounts" in conn.execute.call_args.args[0]


def test_cursor_round_trip_sql(mock_postgres_stores, mock_db_engine) -> None:
    conn = _conn(mock_db_engine)

    assert mock_postgres_stores.get_cursor(name="transfers") is None
    mock_postgres_stores.set_cursor(name="transfers", block_number=42)

    sql, params = conn.execute.call_args.args
    assert "ON CONFLICT (name) DO UPDATE" in sql
    assert params == {"name": "transfers", "block_number": 42}


def test_signing_key_with_unknown_scope_is_corrupt(mock_postgres_stores, mock_db_engine) -> None:
    row = ("0xab", "pub", "{}", "admin", NOW, NOW, None)
    _conn(mock_db_engine).execute.return_value.fetchone.return_value = row

    with pytest.raises(CorruptRecordError):
        mock_postgres_stores.get_current_signing_key(account_id="0xab")


def test_engine_is_created_lazily() -> None:
    from core.storage.postgres.config import PostgresConfig
    from core.storage.postgres.stores import PostgresStores

    stores = PostgresStores(config=PostgresConfig(database_url="postgresql://fake"))
    assert stores._engine is None
