"""Tests for account id derivation and EIP-712 wallet signatures."""

import pytest
from eth_utils import keccak, to_bytes

from cex.orderly.api.wallet import (
    MESSAGE_TYPES,
    OFF_CHAIN_VERIFYING_CONTRACT,
    InvalidPrivateKeyError,
    OrderlyWallet,
    UnsupportedMessageKind,
    WithdrawMessage,
    build_message,
    build_typed_data,
    compute_account_id,
    message_to_dict,
    recover_signer,
)

WALLET_KEY = "0x" + "4c" * 32
LEDGER = "0x6F7a338F2aA472838dEFD3283eB360d4Dff5D203"
ADDRESS = "0x000000000000000000000000000000000000dEaD"


@pytest.fixture
def wallet() -> OrderlyWallet:
    return OrderlyWallet(WALLET_KEY, ledger_address=LEDGER)


class TestAccountId:
    def test_matches_abi_encoded_hash(self) -> None:
        expected = keccak(b"\x00" * 12 + to_bytes(hexstr=ADDRESS) + keccak(text="woofi_dex"))
        assert compute_account_id(ADDRESS, "woofi_dex") == "0x" + expected.hex()

    def test_is_deterministic_and_case_insensitive(self) -> None:
        assert compute_account_id(ADDRESS, "woofi_dex") == compute_account_id(ADDRESS.lower(), "woofi_dex")
        bad_checksum = "0x000000000000000000000000000000000000DeAd"
        assert compute_account_id(bad_checksum, "woofi_dex") == compute_account_id(ADDRESS, "woofi_dex")

    def test_format(self) -> None:
        account_id = compute_account_id(ADDRESS, "woofi_dex")
        assert account_id.startswith("0x")
        assert len(account_id) == 66
        assert account_id == account_id.lower()

    def test_different_broker_gives_different_id(self) -> None:
        assert compute_account_id(ADDRESS, "woofi_dex") != compute_account_id(ADDRESS, "orderly")

    def test_different_address_gives_different_id(self) -> None:
        other = "0x000000000000000000000000000000000000beef"
        assert compute_account_id(ADDRESS, "woofi_dex") != compute_account_id(other, "woofi_dex")

    @pytest.mark.parametrize("address,broker", [("0x123", "woofi_dex"), (ADDRESS, "")])
    def test_invalid_inputs(self, address: str, broker: str) -> None:
        with pytest.raises(ValueError):
            compute_account_id(address, broker)


class TestTypedMessages:
    def test_schema_field_order(self) -> None:
        assert [f["name"] for f in MESSAGE_TYPES["Registration"]] == [
            "brokerId",
            "chainId",
            "timestamp",
            "registrationNonce",
        ]
        assert [f["name"] for f in MESSAGE_TYPES["Withdraw"]] == [
            "brokerId",
            "chainId",
            "receiver",
            "token",
            "amount",
            "withdrawNonce",
            "timestamp",
        ]

    def test_unsupported_kind(self, wallet: OrderlyWallet) -> None:
        with pytest.raises(UnsupportedMessageKind):
            wallet.sign_typed_message("Transfer", {})

    def test_extra_field_rejected(self) -> None:
        fields = {"brokerId": "woofi_dex", "chainId": 42161, "settleNonce": 1, "timestamp": 1, "extra": 1}
        with pytest.raises(ValueError):
            build_message("SettlePnl", fields)

    def test_missing_field_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_message("SettlePnl", {"brokerId": "woofi_dex", "chainId": 42161})

    def test_message_to_dict_follows_schema_order(self) -> None:
        message = build_message(
            "SettlePnl", {"timestamp": 5, "settleNonce": 3, "chainId": 42161, "brokerId": "woofi_dex"}
        )
        assert list(message_to_dict(message)) == ["brokerId", "chainId", "settleNonce", "timestamp"]

    def test_domain_uses_off_chain_contract_for_registration(self) -> None:
        message = build_message(
            "Registration", {"brokerId": "woofi_dex", "chainId": 42161, "timestamp": 1, "registrationNonce": 7}
        )
        typed = build_typed_data(message, verifying_contract=OFF_CHAIN_VERIFYING_CONTRACT)
        assert typed["domain"] == {
            "name": "Orderly",
            "version": "1",
            "chainId": 42161,
            "verifyingContract": OFF_CHAIN_VERIFYING_CONTRACT,
        }
        assert typed["primaryType"] == "Registration"


class TestWalletSignatures:
    def test_invalid_private_key(self) -> None:
        with pytest.raises(InvalidPrivateKeyError):
            OrderlyWallet("0x1234")

    def test_registration_recovers_wallet_address(self, wallet: OrderlyWallet) -> None:
        signed = wallet.sign_registration(broker_id="woofi_dex", chain_id=42161, registration_nonce="194528949540")
        assert signed.message.registrationNonce == 194528949540
        assert recover_signer(signed.message, signed.signature) == wallet.address

    def test_add_key_prefixes_and_sets_expiration(self, wallet: OrderlyWallet) -> None:
        signed = wallet.sign_add_orderly_key(
            broker_id="woofi_dex", chain_id=42161, orderly_key="abc", scope="read", expiration_days=1
        )
        assert signed.message.orderlyKey == "ed25519:abc"
        assert signed.message.expiration - signed.message.timestamp == 24 * 60 * 60 * 1000
        assert recover_signer(signed.message, signed.signature) == wallet.address

    def test_withdraw_is_bound_to_ledger_contract(self, wallet: OrderlyWallet) -> None:
        signed = wallet.sign_withdraw(
            broker_id="woofi_dex",
            chain_id=42161,
            receiver=ADDRESS.lower(),
            token="USDC",
            amount=25_000_000,
            withdraw_nonce=3,
        )
        assert signed.message.receiver == ADDRESS
        assert recover_signer(signed.message, signed.signature, ledger_address=LEDGER) == wallet.address
        other = "0x1826B75e2ef249173FC735149AE4B8e9ea10abff"
        assert recover_signer(signed.message, signed.signature, ledger_address=other) != wallet.address

    def test_withdraw_requires_ledger_address(self) -> None:
        wallet = OrderlyWallet(WALLET_KEY)
        message = WithdrawMessage(
            brokerId="woofi_dex",
            chainId=42161,
            receiver=ADDRESS,
            token="USDC",
            amount=1,
            withdrawNonce=1,
            timestamp=1,
        )
        with pytest.raises(ValueError):
            wallet.sign_message(message)

    def test_same_message_same_signature(self, wallet: OrderlyWallet) -> None:
        fields = {"brokerId": "woofi_dex", "chainId": 42161, "settleNonce": 9, "timestamp": 1700000000000}
        first = wallet.sign_typed_message("SettlePnl", fields)
        second = wallet.sign_typed_message("SettlePnl", fields)
        assert first.signature == second.signature
        assert len(to_bytes(hexstr=first.signature)) == 65

    def test_request_body_shape(self, wallet: OrderlyWallet) -> None:
        signed = wallet.sign_settle_pnl(broker_id="woofi_dex", chain_id=42161, settle_nonce=2)
        body = signed.to_request()
        assert set(body) == {"message", "signature", "userAddress"}
        assert body["userAddress"] == wallet.address

    def test_identity(self, wallet: OrderlyWallet) -> None:
        identity = wallet.identity(broker_id="woofi_dex", chain_id=42161)
        assert identity.account_id == compute_account_id(wallet.address, "woofi_dex")
        assert identity.chain_id == 42161
