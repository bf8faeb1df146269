"""Custodial account lifecycle on the venue.

Onboarding:
    1. Create a wallet and persist it sealed (before touching the venue, so a
       crash never loses a key the venue already knows)
    2. Registration: nonce -> sign Registration -> POST /v1/register_account,
       then check the returned account id against the locally derived one
    3. Key grant: generate Ed25519 key -> sign AddOrderlyKey -> POST /v1/orderly_key

Each step is resumable: re-running `onboard` for a user skips what the venue
already has.
"""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from eth_account import Account

from cex.orderly.api.auth import RequestSigner
from cex.orderly.api.models import OrderAccepted, SettleAccepted, WithdrawAccepted
from cex.orderly.api.orderly_client import OrderlyClient
from cex.orderly.api.wallet import OrderlyWallet, compute_account_id
from core.config import CustodyConfig
from core.custody.keys import KeyService
from core.persistence.interfaces import AccountStore
from core.security.secret_box import SecretBox
from core.types import CustodyAccount, KeyScope, SigningKey

logger = logging.getLogger(__name__)


class CustodyError(Exception):
    """Base exception for account lifecycle failures."""


class AccountNotFoundError(CustodyError):
    pass


class MissingSigningKeyError(CustodyError):
    """No valid (present and unexpired) request-signing key for the account."""


class AccountMismatchError(CustodyError):
    """The venue registered a different account id than the one derived locally."""


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer base units, truncating dust."""
    if amount <= 0:
        raise ValueError("amount must be positive")
    scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(scaled)


def format_symbol(symbol: str) -> str:
    """'btc' -> 'PERP_BTC_USDC'; already-formatted symbols pass through."""
    if symbol.upper().startswith("PERP_"):
        return symbol.upper()
    return f"PERP_{symbol.upper()}_USDC"


class AccountService:
    def __init__(
        self,
        *,
        config: CustodyConfig,
        client: OrderlyClient,
        accounts: AccountStore,
        keys: KeyService,
        secret_box: SecretBox,
    ) -> None:
        self._config = config
        self._client = client
        self._accounts = accounts
        self._keys = keys
        self._box = secret_box

    # ---- onboarding

    def create_wallet(self, user_id: str) -> CustodyAccount:
        """Create and persist a custodial wallet for the user (idempotent)."""
        existing = self._accounts.get_custody_account(user_id=user_id)
        if existing is not None:
            return existing

        local = Account.create()
        private_key = "0x" + bytes(local.key).hex()
        account = CustodyAccount(
            user_id=user_id,
            address=local.address,
            account_id=compute_account_id(local.address, self._config.broker_id),
            broker_id=self._config.broker_id,
            chain_id=self._config.chain_id,
            encrypted_wallet_key=self._box.seal(private_key),
        )
        self._accounts.save_custody_account(account=account)
        logger.info("Created custodial wallet %s for user %s", account.address, user_id)
        return account

    def onboard(self, user_id: str, *, scope: KeyScope = "trading") -> CustodyAccount:
        account = self.create_wallet(user_id)
        wallet = self._open_wallet(account)
        self._ensure_registered(account, wallet)
        if not self._keys.has_valid_key(account.account_id):
            self._grant_key(account, wallet, scope=scope)
        return account

    def _ensure_registered(self, account: CustodyAccount, wallet: OrderlyWallet) -> None:
        listed = self._client.get_all_accounts(account.address, account.broker_id)
        if any(row.account_id.lower() == account.account_id.lower() for row in listed.rows):
            logger.info("Account %s already registered with broker %s", account.account_id, account.broker_id)
            return

        nonce = self._client.get_registration_nonce()
        signed = wallet.sign_registration(
            broker_id=account.broker_id,
            chain_id=account.chain_id,
            registration_nonce=nonce,
        )
        registered = self._client.register_account(signed)
        if registered.account_id.lower() != account.account_id.lower():
            raise AccountMismatchError(
                f"Venue returned account {registered.account_id}, expected {account.account_id}"
            )
        logger.info("Registered account %s for user %s", account.account_id, account.user_id)

    def _grant_key(self, account: CustodyAccount, wallet: OrderlyWallet, *, scope: KeyScope) -> SigningKey:
        key = self._keys.generate_key(account_id=account.account_id, scope=scope)
        signed = wallet.sign_add_orderly_key(
            broker_id=account.broker_id,
            chain_id=account.chain_id,
            orderly_key=key.orderly_key,
            scope=scope,
        )
        self._client.add_orderly_key(signed)
        self._keys.save_key(key)
        logger.info("Granted %s key %s to account %s", scope, key.orderly_key, account.account_id)
        return key

    def rotate_key(self, user_id: str, *, scope: KeyScope = "trading") -> SigningKey:
        """Grant a fresh key on the venue and supersede the stored one."""
        account = self.require_account(user_id)
        return self._grant_key(account, self._open_wallet(account), scope=scope)

    # ---- lookups

    def get_account(self, user_id: str) -> Optional[CustodyAccount]:
        return self._accounts.get_custody_account(user_id=user_id)

    def require_account(self, user_id: str) -> CustodyAccount:
        account = self.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(f"No custodial account for user {user_id}")
        return account

    def signer_for(self, account: CustodyAccount) -> RequestSigner:
        signer = self._keys.load_signer(account.account_id)
        if signer is None:
            raise MissingSigningKeyError(f"No valid signing key for account {account.account_id}")
        return signer

    def _open_wallet(self, account: CustodyAccount) -> OrderlyWallet:
        return OrderlyWallet(
            self._box.open(account.encrypted_wallet_key),
            ledger_address=self._config.ledger_address,
        )

    # ---- asset operations

    def withdraw(
        self,
        user_id: str,
        *,
        receiver: str,
        amount: Decimal,
        token: str = "USDC",
    ) -> WithdrawAccepted:
        account = self.require_account(user_id)
        signer = self.signer_for(account)
        nonce = self._client.get_withdraw_nonce(signer=signer)
        signed = self._open_wallet(account).sign_withdraw(
            broker_id=account.broker_id,
            chain_id=account.chain_id,
            receiver=receiver,
            token=token,
            amount=to_base_units(amount, self._config.deposits.token_decimals),
            withdraw_nonce=nonce,
        )
        accepted = self._client.withdraw_request(
            signed,
            verifying_contract=self._config.ledger_address,
            signer=signer,
        )
        logger.info("Withdraw of %s %s requested for user %s", amount, token, user_id)
        return accepted

    def settle_pnl(self, user_id: str) -> SettleAccepted:
        account = self.require_account(user_id)
        signer = self.signer_for(account)
        nonce = self._client.get_settle_nonce(signer=signer)
        signed = self._open_wallet(account).sign_settle_pnl(
            broker_id=account.broker_id,
            chain_id=account.chain_id,
            settle_nonce=nonce,
        )
        return self._client.settle_pnl(signed, signer=signer)

    def place_order(
        self,
        user_id: str,
        *,
        symbol: str,
        side: str,
        quantity: Decimal,
        order_type: str = "MARKET",
        price: Optional[Decimal] = None,
    ) -> OrderAccepted:
        account = self.require_account(user_id)
        return self._client.create_order(
            symbol=format_symbol(symbol),
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=price,
            signer=self.signer_for(account),
        )
