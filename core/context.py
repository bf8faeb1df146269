"""Process-wide wiring.

A `CustodyContext` is built once at startup and handed to whatever needs it.
Building it validates configuration and the master key, so misconfiguration
fails before any loop starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from cex.orderly.api.orderly_client import OrderlyClient
from core.config import ConfigError, CustodyConfig
from core.custody.accounts import AccountService
from core.custody.keys import KeyService
from core.deposits.chain import ChainClient, Web3ChainClient
from core.deposits.pipeline import DepositLedger, VenueCreditMirror
from core.deposits.scanner import ChainScanner
from core.notifications.dispatcher import NotificationConfig, NotificationDispatcher
from core.security.secret_box import SecretBox
from core.storage import InMemoryStores, PostgresConfig, PostgresStores

logger = logging.getLogger(__name__)

CustodyStores = Union[InMemoryStores, PostgresStores]


@dataclass(frozen=True)
class CustodyContext:
    config: CustodyConfig
    secret_box: SecretBox
    stores: CustodyStores
    client: OrderlyClient
    chain: ChainClient
    keys: KeyService
    accounts: AccountService
    notifier: NotificationDispatcher

    @classmethod
    def build(
        cls,
        config: Optional[CustodyConfig] = None,
        *,
        stores: Optional[CustodyStores] = None,
        chain: Optional[ChainClient] = None,
        client: Optional[OrderlyClient] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> "CustodyContext":
        """
        Raises:
            SecretBoxKeyError: MASTER_ENCRYPTION_KEY missing or malformed
            ConfigError: Invalid configuration
        """
        config = config or CustodyConfig.from_env()
        secret_box = SecretBox.from_hex(config.master_key_hex)

        if stores is None:
            if config.database_url:
                stores = PostgresStores(config=PostgresConfig(database_url=config.database_url))
            else:
                logger.warning("DATABASE_URL not set; using in-memory stores (state is lost on exit)")
                stores = InMemoryStores()

        client = client or OrderlyClient(config.api_base_url, timeout=config.http_timeout_seconds)
        chain = chain or Web3ChainClient(config.rpc_url, timeout=config.http_timeout_seconds)
        keys = KeyService(store=stores, secret_box=secret_box)
        accounts = AccountService(
            config=config,
            client=client,
            accounts=stores,
            keys=keys,
            secret_box=secret_box,
        )

        logger.info(
            "Custody context ready: %s, broker=%s, chain=%s (%d)",
            config.environment,
            config.broker_id,
            config.chain.chain_name,
            config.chain_id,
        )
        return cls(
            config=config,
            secret_box=secret_box,
            stores=stores,
            client=client,
            chain=chain,
            keys=keys,
            accounts=accounts,
            notifier=notifier or NotificationDispatcher(NotificationConfig.from_env()),
        )

    def _require_platform_wallet(self) -> str:
        address = self.config.platform_wallet_address
        if not address:
            raise ConfigError("PLATFORM_WALLET_ADDRESS is required for deposit processing")
        return address

    def deposit_ledger(self) -> DepositLedger:
        return DepositLedger(
            deposits=self.stores,
            ledger=self.stores,
            chain=self.chain,
            mirror=VenueCreditMirror(client=self.client, accounts=self.stores, keys=self.keys),
            settings=self.config.deposits,
            recipient=self._require_platform_wallet(),
            token_address=self.config.token_address,
        )

    def chain_scanner(self) -> ChainScanner:
        settings = self.config.deposits
        return ChainScanner(
            chain=self.chain,
            cursors=self.stores,
            token_address=self.config.token_address,
            recipient=self._require_platform_wallet(),
            token_decimals=settings.token_decimals,
            max_block_range=settings.max_block_range,
            start_block=settings.start_block,
        )
