"""
Configuration management for the custody worker.

Static per-network and per-asset tables live here; anything an operator may
need to tune is read from the environment (or a .env file) by ``Settings``.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import UnsupportedNetworkError
from .models import Asset, Network


class NetworkSpec(BaseModel):
    """Static facts about a blockchain network."""

    name: str
    native_symbol: str
    native_decimals: int
    required_confirmations: int
    derivation_path: str  # hardened account path; address index appended
    block_time_seconds: int


class AssetSpec(BaseModel):
    """Static facts about a custodied asset."""

    network: Network
    symbol: str
    decimals: int
    contract_address: Optional[str] = None
    min_deposit: Decimal
    min_sweep: Decimal


NETWORKS: dict[Network, NetworkSpec] = {
    Network.TRON: NetworkSpec(
        name="Tron",
        native_symbol="TRX",
        native_decimals=6,
        required_confirmations=19,
        derivation_path="m/44'/195'/0'/0",
        block_time_seconds=3,
    ),
    Network.ETHEREUM: NetworkSpec(
        name="Ethereum",
        native_symbol="ETH",
        native_decimals=18,
        required_confirmations=12,
        derivation_path="m/44'/60'/0'/0",
        block_time_seconds=12,
    ),
    Network.BITCOIN: NetworkSpec(
        name="Bitcoin",
        native_symbol="BTC",
        native_decimals=8,
        required_confirmations=3,
        derivation_path="m/44'/0'/0'/0",
        block_time_seconds=600,
    ),
}

ASSETS: dict[Asset, AssetSpec] = {
    Asset.USDT_TRC20: AssetSpec(
        network=Network.TRON,
        symbol="USDT",
        decimals=6,
        contract_address="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
        min_deposit=Decimal("1"),
        min_sweep=Decimal("100"),
    ),
    Asset.USDT_ERC20: AssetSpec(
        network=Network.ETHEREUM,
        symbol="USDT",
        decimals=6,
        contract_address="0xdAC17F958D2ee523a2206206994597C13D831ec7",
        min_deposit=Decimal("10"),  # ETH gas makes dust deposits unsweepable
        min_sweep=Decimal("50"),
    ),
    Asset.ETH: AssetSpec(
        network=Network.ETHEREUM,
        symbol="ETH",
        decimals=18,
        min_deposit=Decimal("0.01"),
        min_sweep=Decimal("0.05"),
    ),
    Asset.BTC: AssetSpec(
        network=Network.BITCOIN,
        symbol="BTC",
        decimals=8,
        min_deposit=Decimal("0.0001"),
        min_sweep=Decimal("0.001"),
    ),
}


class Settings(BaseSettings):
    """
    Environment-based settings.

    Secrets are ``SecretStr`` so they never show up in reprs or logs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Keys
    master_seed: SecretStr = Field(
        default=SecretStr(""),
        description="BIP-39 mnemonic all custodial addresses derive from",
    )
    tron_master_private_key: SecretStr = Field(
        default=SecretStr(""),
        description="Hex key of the TRON account that stakes and delegates energy",
    )
    ethereum_master_private_key: SecretStr = Field(
        default=SecretStr(""),
        description="Hex key of the Ethereum account that funds sweep gas",
    )

    # Hot wallets
    hot_wallet_tron: str = ""
    hot_wallet_ethereum: str = ""

    # TRON
    tron_full_host: str = "https://api.trongrid.io"
    tron_api_key: str = ""
    tron_usdt_contract: str = ASSETS[Asset.USDT_TRC20].contract_address or ""
    tron_transfer_page_limit: int = 50

    # Ethereum
    ethereum_rpc_url: str = ""
    ethereum_chain_id: int = 1
    ethereum_usdt_contract: str = ASSETS[Asset.USDT_ERC20].contract_address or ""
    ethereum_lookback_blocks: int = 10_000

    # Loop
    poll_interval_seconds: float = 15.0
    price_interval_seconds: float = 30.0
    error_backoff_seconds: float = 5.0

    # Thresholds (JSON maps override the static tables)
    min_deposit: dict[Asset, Decimal] = Field(default_factory=dict)
    min_sweep: dict[Asset, Decimal] = Field(default_factory=dict)
    required_confirmations: dict[Network, int] = Field(default_factory=dict)

    # Delegation
    delegation_propagation_seconds: float = 3.0
    energy_per_transfer: int = 65_000
    delegation_margin: int = 2
    reclaim_delay_seconds: float = 5.0
    reclaim_backoff_seconds: float = 30.0
    reclaim_max_attempts: int = 5
    tron_fee_fallback_trx: Decimal = Decimal("30")  # 0 disables TRX top-ups
    tron_fee_fallback_min_trx: Decimal = Decimal("15")

    # Rate limits
    tron_requests_per_second: float = 5.0
    ethereum_requests_per_second: float = 10.0
    provider_burst: int = 5
    sweep_spacing_seconds: float = 5.0

    # Ledger
    ledger_api_url: str = "http://localhost:3000"
    internal_api_key: SecretStr = SecretStr("")
    notify_timeout_seconds: float = 10.0

    # Prices
    binance_api_url: str = "https://api.binance.com/api/v3"
    fx_fallback_url: str = "https://api.exchangerate-api.com/v4/latest/USD"
    fx_emergency_usd_mxn: Decimal = Decimal("17.5")

    # Database
    database_url: str = "sqlite:///./custody_worker.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@dataclass
class WorkerConfig:
    """Full worker configuration with table lookups."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "WorkerConfig":
        """Load configuration from environment."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        return cls(settings=settings)

    def network(self, network: Network) -> NetworkSpec:
        try:
            return NETWORKS[network]
        except KeyError:
            raise UnsupportedNetworkError(str(network)) from None

    def asset(self, asset: Asset) -> AssetSpec:
        try:
            return ASSETS[asset]
        except KeyError:
            raise UnsupportedNetworkError(str(asset)) from None

    def required_confirmations(self, network: Network) -> int:
        """Confirmation depth is per network, never per asset."""
        override = self.settings.required_confirmations.get(network)
        if override is not None:
            return override
        return self.network(network).required_confirmations

    def min_deposit(self, asset: Asset) -> Decimal:
        override = self.settings.min_deposit.get(asset)
        return override if override is not None else self.asset(asset).min_deposit

    def min_sweep(self, asset: Asset) -> Decimal:
        override = self.settings.min_sweep.get(asset)
        return override if override is not None else self.asset(asset).min_sweep

    def hot_wallet(self, network: Network) -> Optional[str]:
        address = {
            Network.TRON: self.settings.hot_wallet_tron,
            Network.ETHEREUM: self.settings.hot_wallet_ethereum,
        }.get(network, "")
        return address or None

    def master_private_key(self, network: Network) -> Optional[str]:
        secret = {
            Network.TRON: self.settings.tron_master_private_key,
            Network.ETHEREUM: self.settings.ethereum_master_private_key,
        }.get(network)
        if secret is None:
            return None
        return secret.get_secret_value() or None

    def contract_address(self, asset: Asset) -> Optional[str]:
        """Token contract, honouring per-network overrides."""
        if asset == Asset.USDT_TRC20:
            return self.settings.tron_usdt_contract
        if asset == Asset.USDT_ERC20:
            return self.settings.ethereum_usdt_contract
        return self.asset(asset).contract_address
