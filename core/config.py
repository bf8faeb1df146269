"""Runtime configuration for the custody service.

Everything comes from environment variables and is read once at startup.
Secrets (master key, database URL) are held here but never logged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

NetworkEnvironment = Literal["mainnet", "testnet"]


class ConfigError(ValueError):
    """Invalid or missing configuration. Fatal at startup."""


@dataclass(frozen=True)
class ChainAddresses:
    chain_id: int
    chain_name: str
    usdc: str
    vault: Optional[str] = None
    default_rpc_url: Optional[str] = None


SUPPORTED_CHAINS: dict[int, ChainAddresses] = {
    42161: ChainAddresses(
        chain_id=42161,
        chain_name="Arbitrum One",
        usdc="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        vault="0x816f722424B49Cf1275cc86DA9840Fbd5a6167e9",
        default_rpc_url="https://arb1.arbitrum.io/rpc",
    ),
    421614: ChainAddresses(
        chain_id=421614,
        chain_name="Arbitrum Sepolia",
        usdc="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
        vault="0x0EaC556c0C2321BA25b9DC01e4e3c95aD5CDCd2f",
        default_rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
    ),
    10: ChainAddresses(
        chain_id=10,
        chain_name="Optimism",
        usdc="0x0b2c639c533813f4aa9d7837caf62653d097ff85",
        vault="0x816f722424b49cf1275cc86da9840fbd5a6167e9",
        default_rpc_url="https://mainnet.optimism.io",
    ),
    11155420: ChainAddresses(
        chain_id=11155420,
        chain_name="Optimism Sepolia",
        usdc="0x5fd84259d66Cd46123540766Be93DFE6D43130D7",
        vault="0xEfF2896077B6ff95379EfA89Ff903598190805EC",
        default_rpc_url="https://sepolia.optimism.io",
    ),
}

# Orderly L2 ledger contract; verifying contract for Withdraw signatures
ORDERLY_LEDGER_ADDRESSES: dict[str, str] = {
    "mainnet": "0x6F7a338F2aA472838dEFD3283eB360d4Dff5D203",
    "testnet": "0x1826B75e2ef249173FC735149AE4B8e9ea10abff",
}

API_BASE_URLS: dict[str, str] = {
    "mainnet": "https://api-evm.orderly.org",
    "testnet": "https://testnet-api-evm.orderly.org",
}


def get_chain(chain_id: int) -> ChainAddresses:
    chain = SUPPORTED_CHAINS.get(chain_id)
    if chain is None:
        supported = ", ".join(str(cid) for cid in SUPPORTED_CHAINS)
        raise ConfigError(f"Unsupported chain ID: {chain_id}. Supported chains: {supported}")
    return chain


@dataclass(frozen=True)
class DepositSettings:
    required_confirmations: int = 12
    min_amount: Decimal = Decimal("10")
    alert_threshold: int = 3
    max_retries: int = 10
    max_resets: int = 3
    token_decimals: int = 6
    max_block_range: int = 2000
    scan_interval_seconds: float = 30.0
    credit_interval_seconds: float = 30.0
    start_block: Optional[int] = None

    def __post_init__(self) -> None:
        if self.required_confirmations < 1:
            raise ConfigError("DEPOSIT_CONFIRMATIONS must be >= 1")
        if self.alert_threshold < 1 or self.max_retries < 1:
            raise ConfigError("DEPOSIT_ALERT_THRESHOLD and DEPOSIT_MAX_RETRIES must be >= 1")
        if self.max_block_range < 1:
            raise ConfigError("DEPOSIT_MAX_BLOCK_RANGE must be >= 1")


@dataclass(frozen=True)
class CustodyConfig:
    environment: NetworkEnvironment = "mainnet"
    api_base_url: str = API_BASE_URLS["mainnet"]
    broker_id: str = "woofi_dex"
    chain_id: int = 42161
    rpc_url: str = "https://arb1.arbitrum.io/rpc"
    token_address: str = SUPPORTED_CHAINS[42161].usdc
    platform_wallet_address: Optional[str] = None
    master_key_hex: Optional[str] = field(default=None, repr=False)
    database_url: Optional[str] = field(default=None, repr=False)
    deposits: DepositSettings = field(default_factory=DepositSettings)
    http_timeout_seconds: float = 30.0

    @property
    def chain(self) -> ChainAddresses:
        return get_chain(self.chain_id)

    @property
    def ledger_address(self) -> str:
        return ORDERLY_LEDGER_ADDRESSES[self.environment]

    @classmethod
    def from_env(cls) -> "CustodyConfig":
        environment = os.getenv("ORDERLY_ENVIRONMENT", "mainnet").strip().lower()
        if environment not in ("mainnet", "testnet"):
            raise ConfigError(f"ORDERLY_ENVIRONMENT must be 'mainnet' or 'testnet', got {environment!r}")

        chain_id = _env_int("ORDERLY_CHAIN_ID", 42161)
        chain = get_chain(chain_id)

        broker_id = os.getenv("ORDERLY_BROKER_ID", "woofi_dex").strip()
        if not broker_id:
            raise ConfigError("ORDERLY_BROKER_ID environment variable is required")

        start_block = os.getenv("DEPOSIT_START_BLOCK")
        deposits = DepositSettings(
            required_confirmations=_env_int("DEPOSIT_CONFIRMATIONS", 12),
            min_amount=_env_decimal("DEPOSIT_MIN_AMOUNT", Decimal("10")),
            alert_threshold=_env_int("DEPOSIT_ALERT_THRESHOLD", 3),
            max_retries=_env_int("DEPOSIT_MAX_RETRIES", 10),
            max_resets=_env_int("DEPOSIT_MAX_RESETS", 3),
            max_block_range=_env_int("DEPOSIT_MAX_BLOCK_RANGE", 2000),
            scan_interval_seconds=float(_env_int("DEPOSIT_SCAN_INTERVAL", 30)),
            credit_interval_seconds=float(_env_int("DEPOSIT_CREDIT_INTERVAL", 30)),
            start_block=int(start_block) if start_block else None,
        )

        return cls(
            environment=environment,  # type: ignore[arg-type]
            api_base_url=os.getenv("ORDERLY_API_URL") or API_BASE_URLS[environment],
            broker_id=broker_id,
            chain_id=chain_id,
            rpc_url=os.getenv("CHAIN_RPC_URL") or chain.default_rpc_url or "",
            token_address=os.getenv("USDC_CONTRACT_ADDRESS") or chain.usdc,
            platform_wallet_address=os.getenv("PLATFORM_WALLET_ADDRESS") or None,
            master_key_hex=os.getenv("MASTER_ENCRYPTION_KEY") or None,
            database_url=os.getenv("DATABASE_URL") or None,
            deposits=deposits,
            http_timeout_seconds=float(_env_int("ORDERLY_HTTP_TIMEOUT", 30)),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ConfigError(f"{name} must be a decimal number, got {raw!r}") from exc
