"""Tests for the deposit settlement state machine."""

from dataclasses import replace
from decimal import Decimal
from unittest.mock import Mock

import pytest

from cex.orderly.api.errors import ClockSkewError, create_orderly_error
from conftest import PLATFORM_WALLET, USDC, FakeChain, make_log
from core.config import DepositSettings
from core.deposits.pipeline import (
    ClaimError,
    DepositLedger,
    DepositNotFoundError,
    MirrorUnavailable,
    ResetError,
    VenueCreditMirror,
)
from core.deposits.scanner import ChainScanner, merge_transfers
from core.persistence.interfaces import CorruptRecordError
from core.security.secret_box import AuthenticationFailed, SecretBoxKeyError
from core.storage.memory_stores import InMemoryStores

TX = "0x" + "aa" * 32


@pytest.fixture
def mirror() -> Mock:
    return Mock(return_value=None)


@pytest.fixture
def ledger(stores, chain, mirror, deposit_settings, fixed_clock) -> DepositLedger:
    return DepositLedger(
        deposits=stores,
        ledger=stores,
        chain=chain,
        mirror=mirror,
        settings=deposit_settings,
        recipient=PLATFORM_WALLET,
        token_address=USDC,
        clock=fixed_clock,
    )


@pytest.fixture
def scanner(stores, chain) -> ChainScanner:
    return ChainScanner(chain=chain, cursors=stores, token_address=USDC, recipient=PLATFORM_WALLET, start_block=90)


def _deposit(chain: FakeChain, *, value: int = 25_000_000, block: int = 100, tx_hash: str = TX) -> None:
    chain.add_transfer(make_log(tx_hash, value=value, block_number=block))


def _credited_balance(stores: InMemoryStores, user_id: str) -> Decimal:
    account = stores.get_ledger_account(user_id=user_id)
    return account.balance if account else Decimal("0")


def _confirmed_owned(ledger: DepositLedger, chain: FakeChain, user_id: str = "alice") -> None:
    _deposit(chain)
    ledger.claim(TX, user_id)
    chain.head = 112


class TestDetection:
    def test_scan_records_new_deposit_as_pending(self, ledger, scanner, chain, stores) -> None:
        _deposit(chain)

        report = ledger.scan(scanner)

        assert report.recorded == [TX]
        record = ledger.get(TX)
        assert record.status == "pending"
        assert record.amount == Decimal("25")
        assert record.confirmations == 0
        assert record.user_id is None

    def test_recording_same_transfer_twice_keeps_one_record(self, ledger, chain, stores) -> None:
        _deposit(chain)
        events = merge_transfers(chain.logs, 6)

        first = ledger.record_transfers(events, head=100)
        second = ledger.record_transfers(events, head=100)

        assert first.recorded == [TX]
        assert second.recorded == []
        assert len(stores.list_deposits()) == 1

    def test_dust_is_ignored(self, ledger, scanner, chain, stores) -> None:
        _deposit(chain, value=9_990_000)

        ledger.scan(scanner)

        assert stores.list_deposits() == []
        assert scanner.last_scanned_block == 100

    def test_deep_transfer_is_recorded_confirmed(self, ledger, scanner, chain) -> None:
        _deposit(chain, block=95)
        chain.head = 107

        ledger.scan(scanner)

        assert ledger.get(TX).status == "confirmed"


class TestConfirmation:
    def test_one_below_threshold_stays_pending(self, ledger, chain) -> None:
        _deposit(chain)
        ledger.claim(TX, "alice")
        chain.head = 111

        report = ledger.tick()

        assert report.confirmed == []
        record = ledger.get(TX)
        assert record.status == "pending"
        assert record.confirmations == 11

    def test_missing_receipt_keeps_record(self, ledger, chain) -> None:
        _deposit(chain)
        ledger.claim(TX, "alice")
        del chain.receipts[TX]
        chain.head = 200

        report = ledger.tick()

        assert report.errors == []
        assert ledger.get(TX).status == "pending"


class TestCrediting:
    def test_end_to_end_credit_happens_once(self, ledger, scanner, chain, stores, mirror) -> None:
        _deposit(chain)
        ledger.scan(scanner)
        ledger.claim(TX, "alice")
        chain.head = 112

        report = ledger.tick()

        assert report.confirmed == [TX]
        assert report.credited == [TX]
        record = ledger.get(TX)
        assert record.status == "credited"
        assert record.orderly_confirmed
        assert record.internal_credited_at is not None
        assert _credited_balance(stores, "alice") == Decimal("25")

        chain.head = 150
        again = ledger.tick()

        assert again.is_quiet
        assert _credited_balance(stores, "alice") == Decimal("25")
        mirror.assert_called_once()

    def test_unclaimed_deposit_is_not_credited(self, ledger, chain, stores, mirror) -> None:
        _deposit(chain)
        ledger.record_transfers(merge_transfers(chain.logs, 6), head=100)
        chain.head = 112

        report = ledger.tick()

        assert report.confirmed == [TX]
        assert report.credited == []
        mirror.assert_not_called()
        assert stores.get_ledger_account(user_id="alice") is None

    def test_three_mirror_failures_retry_and_alert(self, ledger, chain, stores, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = create_orderly_error(-1003, "too many requests")

        reports = [ledger.tick() for _ in range(3)]

        record = ledger.get(TX)
        assert record.status == "confirmed"
        assert record.retry_count == 3
        assert "TOO_MANY_REQUEST" in record.error_message
        assert [len(r.alerts) for r in reports] == [0, 0, 1]
        assert reports[2].alerts[0].severity == "warning"
        assert _credited_balance(stores, "alice") == Decimal("25")

        mirror.side_effect = None
        final = ledger.tick()

        assert final.credited == [TX]
        assert ledger.get(TX).error_message is None
        assert _credited_balance(stores, "alice") == Decimal("25")

    def test_duplicate_request_counts_as_success(self, ledger, chain, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = create_orderly_error(-1007, "already applied")

        report = ledger.tick()

        assert report.credited == [TX]
        assert ledger.get(TX).status == "credited"

    def test_non_retryable_error_fails_with_alert(self, ledger, chain, stores, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = create_orderly_error(-1005, "bad amount")

        report = ledger.tick()

        assert report.failed == [TX]
        assert report.alerts[0].severity == "error"
        record = ledger.get(TX)
        assert record.status == "failed"
        assert record.retry_count == 1
        assert _credited_balance(stores, "alice") == Decimal("25")

    def test_retries_exhausted_fails(self, stores, chain, mirror, fixed_clock) -> None:
        ledger = DepositLedger(
            deposits=stores,
            ledger=stores,
            chain=chain,
            mirror=mirror,
            settings=DepositSettings(max_retries=2),
            recipient=PLATFORM_WALLET,
            token_address=USDC,
            clock=fixed_clock,
        )
        _confirmed_owned(ledger, chain)
        mirror.side_effect = create_orderly_error(-1000, "unknown")

        ledger.tick()
        report = ledger.tick()

        assert report.failed == [TX]
        assert ledger.get(TX).retry_count == 2

    def test_clock_skew_alerts_immediately_and_retries(self, ledger, chain, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = ClockSkewError("Timestamp skew too large")

        report = ledger.tick()

        assert report.retried == [TX]
        assert len(report.alerts) == 1
        assert ledger.get(TX).status == "confirmed"

    def test_missing_venue_account_is_retried(self, stores, chain, deposit_settings, fixed_clock, secret_box) -> None:
        from core.custody.keys import KeyService

        venue_mirror = VenueCreditMirror(
            client=Mock(), accounts=stores, keys=KeyService(store=stores, secret_box=secret_box)
        )
        ledger = DepositLedger(
            deposits=stores,
            ledger=stores,
            chain=chain,
            mirror=venue_mirror,
            settings=deposit_settings,
            recipient=PLATFORM_WALLET,
            token_address=USDC,
            clock=fixed_clock,
        )
        _confirmed_owned(ledger, chain)

        report = ledger.tick()

        assert report.retried == [TX]
        assert "no venue account" in ledger.get(TX).error_message

    def test_unusable_key_on_one_deposit_does_not_block_later_ones(self, ledger, chain, stores, mirror) -> None:
        other = "0x" + "bb" * 32
        _deposit(chain, block=100)
        _deposit(chain, block=101, tx_hash=other)
        ledger.claim(TX, "alice")
        ledger.claim(other, "bob")
        chain.head = 113

        def credit(record):
            if record.tx_hash == TX:
                raise AuthenticationFailed("Failed to decrypt: tag mismatch")

        mirror.side_effect = credit

        report = ledger.tick()

        assert report.retried == [TX]
        assert report.credited == [other]
        first = ledger.get(TX)
        assert first.status == "confirmed"
        assert first.retry_count == 1
        assert "tag mismatch" in first.error_message
        assert ledger.get(other).status == "credited"
        assert _credited_balance(stores, "bob") == Decimal("25")

    def test_missing_master_key_stops_the_tick(self, ledger, chain, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = SecretBoxKeyError("MASTER_ENCRYPTION_KEY is not set")

        with pytest.raises(SecretBoxKeyError):
            ledger.tick()

        assert ledger.get(TX).retry_count == 0

    @pytest.mark.parametrize(
        "error", [AuthenticationFailed("Failed to decrypt"), ValueError("Private key must be 32 bytes")]
    )
    def test_venue_mirror_reports_unusable_key_as_unavailable(self, error) -> None:
        accounts = Mock()
        accounts.get_custody_account.return_value = Mock(account_id="0xabc")
        keys = Mock()
        keys.load_signer.side_effect = error
        client = Mock()
        venue_mirror = VenueCreditMirror(client=client, accounts=accounts, keys=keys)
        record = Mock(user_id="alice", amount=Decimal("25"))

        with pytest.raises(MirrorUnavailable, match="unusable"):
            venue_mirror(record)

        client.credit_account.assert_not_called()

    def test_corrupt_record_stops_the_tick(self, ledger, chain, stores) -> None:
        _deposit(chain)
        ledger.claim(TX, "alice")
        record = stores.get_deposit(tx_hash=TX)
        stores._deposits[TX] = replace(record, amount=Decimal("0"))

        with pytest.raises(CorruptRecordError):
            ledger.tick()


class TestOperatorActions:
    def test_reset_failed_deposit(self, ledger, chain, stores, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = create_orderly_error(-1005, "bad amount")
        ledger.tick()

        reset = ledger.reset_failed(TX)

        assert reset.status == "confirmed"
        assert reset.retry_count == 0
        assert reset.reset_count == 1

        mirror.side_effect = None
        assert ledger.tick().credited == [TX]
        assert _credited_balance(stores, "alice") == Decimal("25")

    def test_reset_only_applies_to_failed(self, ledger, chain) -> None:
        _deposit(chain)
        ledger.claim(TX, "alice")

        with pytest.raises(ResetError):
            ledger.reset_failed(TX)

    def test_reset_budget_is_bounded(self, ledger, chain, mirror) -> None:
        _confirmed_owned(ledger, chain)
        mirror.side_effect = create_orderly_error(-1005, "bad amount")
        for _ in range(3):
            ledger.tick()
            ledger.reset_failed(TX)
        ledger.tick()

        with pytest.raises(ResetError):
            ledger.reset_failed(TX)

    def test_claim_unseen_transfer_verifies_receipt(self, ledger, chain) -> None:
        _deposit(chain)

        record = ledger.claim(TX.upper().replace("0X", "0x"), "alice")

        assert record.user_id == "alice"
        assert record.amount == Decimal("25")
        assert ledger.get(TX).user_id == "alice"

    def test_claim_is_idempotent_for_same_user(self, ledger, chain) -> None:
        _deposit(chain)
        first = ledger.claim(TX, "alice")
        assert ledger.claim(TX, "alice") == first

    def test_claim_by_other_user_rejected(self, ledger, chain) -> None:
        _deposit(chain)
        ledger.claim(TX, "alice")

        with pytest.raises(ClaimError):
            ledger.claim(TX, "bob")

    def test_claim_of_transfer_elsewhere_rejected(self, ledger, chain) -> None:
        chain.add_transfer(make_log(TX, value=25_000_000, block_number=100, to_address="0x" + "33" * 20))

        with pytest.raises(ClaimError):
            ledger.claim(TX, "alice")

    def test_claim_of_reverted_transaction_rejected(self, ledger, chain) -> None:
        chain.add_transfer(make_log(TX, value=25_000_000, block_number=100), status=0)

        with pytest.raises(ClaimError):
            ledger.claim(TX, "alice")

    def test_get_unknown_deposit(self, ledger) -> None:
        with pytest.raises(DepositNotFoundError):
            ledger.get("0x" + "00" * 32)
