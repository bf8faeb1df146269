from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from core.persistence.interfaces import (
    AccountStore,
    CorruptRecordError,
    CursorStore,
    DepositStore,
    LedgerStore,
    SigningKeyStore,
)
from core.storage.postgres.config import PostgresConfig
from core.types import (
    DEPOSIT_STATUSES,
    KEY_SCOPES,
    CustodyAccount,
    DepositRecord,
    LedgerAccount,
    SigningKey,
)

_DEPOSIT_COLUMNS = """
    tx_hash, amount, from_address, to_address, block_number, confirmations,
    required_confirmations, status, orderly_confirmed, retry_count, reset_count,
    user_id, error_message, detected_at, confirmed_at, internal_credited_at, credited_at
"""

_SIGNING_KEY_COLUMNS = """
    account_id, public_key, encrypted_private_key, scope, expires_at, created_at, superseded_at
"""


def _row_to_deposit(row: Any) -> DepositRecord:
    try:
        record = DepositRecord(
            tx_hash=str(row[0]),
            amount=Decimal(str(row[1])),
            from_address=str(row[2]),
            to_address=str(row[3]),
            block_number=int(row[4]),
            confirmations=int(row[5]),
            required_confirmations=int(row[6]),
            status=row[7],
            orderly_confirmed=bool(row[8]),
            retry_count=int(row[9]),
            reset_count=int(row[10]),
            user_id=row[11],
            error_message=row[12],
            detected_at=row[13],
            confirmed_at=row[14],
            internal_credited_at=row[15],
            credited_at=row[16],
        )
    except (TypeError, ValueError, IndexError, InvalidOperation) as exc:
        raise CorruptRecordError(f"Unreadable deposit row for tx {row[0] if row else '?'}") from exc

    if record.status not in DEPOSIT_STATUSES:
        raise CorruptRecordError(f"Deposit {record.tx_hash} has unknown status {record.status!r}")
    return record


def _deposit_params(record: DepositRecord) -> dict[str, Any]:
    return {
        "tx_hash": record.tx_hash,
        "amount": record.amount,
        "from_address": record.from_address,
        "to_address": record.to_address,
        "block_number": record.block_number,
        "confirmations": record.confirmations,
        "required_confirmations": record.required_confirmations,
        "status": record.status,
        "orderly_confirmed": record.orderly_confirmed,
        "retry_count": record.retry_count,
        "reset_count": record.reset_count,
        "user_id": record.user_id,
        "error_message": record.error_message,
        "detected_at": record.detected_at,
        "confirmed_at": record.confirmed_at,
        "internal_credited_at": record.internal_credited_at,
        "credited_at": record.credited_at,
    }


def _row_to_signing_key(row: Any) -> SigningKey:
    if row[3] not in KEY_SCOPES:
        raise CorruptRecordError(f"Signing key {row[1]} has unknown scope {row[3]!r}")
    return SigningKey(
        account_id=row[0],
        public_key=row[1],
        encrypted_private_key=row[2],
        scope=row[3],
        expires_at=row[4],
        created_at=row[5],
        superseded_at=row[6],
    )


class PostgresStores(DepositStore, LedgerStore, SigningKeyStore, AccountStore, CursorStore):
    """Single entrypoint for the PostgreSQL-backed persistence layer.

    SQL runs through SQLAlchemy `text()` statements; each method opens its own
    transaction with `engine.begin()`.
    """

    def __init__(self, *, config: PostgresConfig) -> None:
        self._config = config
        self._engine: Any | None = None

    def _require_sqlalchemy(self) -> tuple[Any, Any]:
        try:
            from sqlalchemy import create_engine, text  # type: ignore[import-not-found]
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError("SQLAlchemy is required for PostgresStores. Install with: pip install -e .") from exc

        return create_engine, text

    def _get_engine(self) -> Any:
        if self._engine is None:
            create_engine, _ = self._require_sqlalchemy()
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(self._config.database_url, echo=False, pool_pre_ping=True)
        return self._engine

    # ---- DepositStore

    def insert_deposit(self, *, record: DepositRecord) -> bool:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            INSERT INTO deposits ({_DEPOSIT_COLUMNS})
            VALUES (
                :tx_hash, :amount, :from_address, :to_address, :block_number, :confirmations,
                :required_confirmations, :status, :orderly_confirmed, :retry_count, :reset_count,
                :user_id, :error_message, COALESCE(:detected_at, NOW()), :confirmed_at,
                :internal_credited_at, :credited_at
            )
            ON CONFLICT (tx_hash) DO NOTHING
            RETURNING tx_hash
            """
        )

        with engine.begin() as conn:
            row = conn.execute(stmt, _deposit_params(record)).fetchone()

        return row is not None

    def get_deposit(self, *, tx_hash: str) -> Optional[DepositRecord]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(f"SELECT {_DEPOSIT_COLUMNS} FROM deposits WHERE tx_hash = :tx_hash")

        with engine.begin() as conn:
            row = conn.execute(stmt, {"tx_hash": tx_hash}).fetchone()

        return None if row is None else _row_to_deposit(row)

    def list_deposits(
        self,
        *,
        statuses: Sequence[str] | None = None,
        user_id: str | None = None,
        limit: int = 1000,
    ) -> Sequence[DepositRecord]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        filters = ["TRUE"]
        params: dict[str, Any] = {"limit": limit}

        if statuses is not None:
            filters.append("status = ANY(:statuses)")
            params["statuses"] = list(statuses)

        if user_id is not None:
            filters.append("user_id = :user_id")
            params["user_id"] = user_id

        where_clause = " AND ".join(filters)

        stmt = text(
            f"""
            SELECT {_DEPOSIT_COLUMNS}
            FROM deposits
            WHERE {where_clause}
            ORDER BY block_number ASC, tx_hash ASC
            LIMIT :limit
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, params).fetchall()

        return [_row_to_deposit(row) for row in rows]

    def update_deposit(self, *, record: DepositRecord, expected_status: str) -> bool:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            UPDATE deposits
            SET confirmations = :confirmations,
                status = :status,
                orderly_confirmed = :orderly_confirmed,
                retry_count = :retry_count,
                reset_count = :reset_count,
                user_id = :user_id,
                error_message = :error_message,
                confirmed_at = :confirmed_at,
                internal_credited_at = :internal_credited_at,
                credited_at = :credited_at
            WHERE tx_hash = :tx_hash
              AND status = :expected_status
            """
        )

        params = _deposit_params(record)
        params["expected_status"] = expected_status

        with engine.begin() as conn:
            result = conn.execute(stmt, params)

        return int(getattr(result, "rowcount", 0) or 0) == 1

    # ---- LedgerStore

    def apply_credit(self, *, user_id: str, amount: Decimal, reference: str) -> bool:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        entry_stmt = text(
            """
            INSERT INTO ledger_entries (reference, user_id, amount)
            VALUES (:reference, :user_id, :amount)
            ON CONFLICT (reference) DO NOTHING
            RETURNING id
            """
        )
        balance_stmt = text(
            """
            INSERT INTO ledger_accounts (user_id, balance, total_deposits, updated_at)
            VALUES (:user_id, :amount, :amount, NOW())
            ON CONFLICT (user_id) DO UPDATE SET
                balance = ledger_accounts.balance + EXCLUDED.balance,
                total_deposits = ledger_accounts.total_deposits + EXCLUDED.total_deposits,
                updated_at = NOW()
            """
        )

        params = {"reference": reference, "user_id": user_id, "amount": amount}

        # Entry and balance change commit together or not at all.
        with engine.begin() as conn:
            inserted = conn.execute(entry_stmt, params).fetchone()
            if inserted is None:
                return False
            conn.execute(balance_stmt, params)

        return True

    def has_credit(self, *, reference: str) -> bool:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text("SELECT 1 FROM ledger_entries WHERE reference = :reference")

        with engine.begin() as conn:
            row = conn.execute(stmt, {"reference": reference}).fetchone()

        return row is not None

    def get_ledger_account(self, *, user_id: str) -> Optional[LedgerAccount]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            SELECT user_id, balance, total_deposits, updated_at
            FROM ledger_accounts
            WHERE user_id = :user_id
            """
        )

        with engine.begin() as conn:
            row = conn.execute(stmt, {"user_id": user_id}).fetchone()

        if row is None:
            return None
        return LedgerAccount(
            user_id=row[0],
            balance=Decimal(str(row[1])),
            total_deposits=Decimal(str(row[2])),
            updated_at=row[3],
        )

    # ---- SigningKeyStore

    def insert_signing_key(self, *, key: SigningKey) -> None:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            INSERT INTO signing_keys (account_id, public_key, encrypted_private_key, scope, expires_at, created_at)
            VALUES (:account_id, :public_key, :encrypted_private_key, :scope, :expires_at, COALESCE(:created_at, NOW()))
            """
        )

        with engine.begin() as conn:
            conn.execute(
                stmt,
                {
                    "account_id": key.account_id,
                    "public_key": key.public_key,
                    "encrypted_private_key": key.encrypted_private_key,
                    "scope": key.scope,
                    "expires_at": key.expires_at,
                    "created_at": key.created_at,
                },
            )

    def get_current_signing_key(self, *, account_id: str) -> Optional[SigningKey]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            SELECT {_SIGNING_KEY_COLUMNS}
            FROM signing_keys
            WHERE account_id = :account_id
              AND superseded_at IS NULL
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """
        )

        with engine.begin() as conn:
            row = conn.execute(stmt, {"account_id": account_id}).fetchone()

        return None if row is None else _row_to_signing_key(row)

    def supersede_signing_key(self, *, account_id: str, public_key: str, superseded_at: datetime) -> bool:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            UPDATE signing_keys
            SET superseded_at = :superseded_at
            WHERE account_id = :account_id
              AND public_key = :public_key
              AND superseded_at IS NULL
            """
        )

        with engine.begin() as conn:
            result = conn.execute(
                stmt,
                {"account_id": account_id, "public_key": public_key, "superseded_at": superseded_at},
            )

        return int(getattr(result, "rowcount", 0) or 0) == 1

    def list_signing_keys(self, *, account_id: str) -> Sequence[SigningKey]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            SELECT {_SIGNING_KEY_COLUMNS}
            FROM signing_keys
            WHERE account_id = :account_id
            ORDER BY created_at DESC, id DESC
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, {"account_id": account_id}).fetchall()

        return [_row_to_signing_key(row) for row in rows]

    # ---- AccountStore

    def save_custody_account(self, *, account: CustodyAccount) -> None:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            INSERT INTO custody_accounts (user_id, address, account_id, broker_id, chain_id, encrypted_wallet_key)
            VALUES (:user_id, :address, :account_id, :broker_id, :chain_id, :encrypted_wallet_key)
            """
        )

        with engine.begin() as conn:
            conn.execute(
                stmt,
                {
                    "user_id": account.user_id,
                    "address": account.address,
                    "account_id": account.account_id,
                    "broker_id": account.broker_id,
                    "chain_id": account.chain_id,
                    "encrypted_wallet_key": account.encrypted_wallet_key,
                },
            )

    def _fetch_custody_account(self, where: str, params: dict[str, Any]) -> Optional[CustodyAccount]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            f"""
            SELECT user_id, address, account_id, broker_id, chain_id, encrypted_wallet_key, created_at
            FROM custody_accounts
            WHERE {where}
            """
        )

        with engine.begin() as conn:
            row = conn.execute(stmt, params).fetchone()

        if row is None:
            return None
        return CustodyAccount(
            user_id=row[0],
            address=row[1],
            account_id=row[2],
            broker_id=row[3],
            chain_id=int(row[4]),
            encrypted_wallet_key=row[5],
            created_at=row[6],
        )

    def get_custody_account(self, *, user_id: str) -> Optional[CustodyAccount]:
        return self._fetch_custody_account("user_id = :user_id", {"user_id": user_id})

    def find_custody_account(self, *, address: str) -> Optional[CustodyAccount]:
        return self._fetch_custody_account("LOWER(address) = LOWER(:address)", {"address": address})

    # ---- CursorStore

    def get_cursor(self, *, name: str) -> Optional[int]:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text("SELECT last_scanned_block FROM scan_cursors WHERE name = :name")

        with engine.begin() as conn:
            row = conn.execute(stmt, {"name": name}).fetchone()

        return None if row is None else int(row[0])

    def set_cursor(self, *, name: str, block_number: int) -> None:
        engine = self._get_engine()
        _, text = self._require_sqlalchemy()

        stmt = text(
            """
            INSERT INTO scan_cursors (name, last_scanned_block, updated_at)
            VALUES (:name, :block_number, NOW())
            ON CONFLICT (name) DO UPDATE SET
                last_scanned_block = EXCLUDED.last_scanned_block,
                updated_at = NOW()
            """
        )

        with engine.begin() as conn:
            conn.execute(stmt, {"name": name, "block_number": block_number})
