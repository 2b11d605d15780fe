"""
Configuration management for the IBT bridge relayer.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from eth_account import Account
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from .errors import StartupConfigError
from .signer import SuiKeypair


class Settings(BaseSettings):
    """
    Environment-based settings.

    Endpoints, contract/module identifiers and custodian keys for both
    ledgers are required; everything else is relay policy with defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ethereum
    eth_rpc_url: Optional[str] = None
    eth_contract_address: Optional[str] = None
    eth_private_key: Optional[str] = None
    eth_chain_id: Optional[int] = Field(
        default=None, description="Chain ID; queried from the node when unset"
    )
    eth_gas_limit: int = 200_000
    eth_decimals: int = 18

    # Sui
    sui_rpc_url: str = "http://127.0.0.1:9000"
    sui_package_id: Optional[str] = None
    sui_bridge_auth_id: Optional[str] = None
    sui_module: str = "IBT"
    sui_private_key: Optional[str] = None
    sui_gas_budget: int = 10_000_000
    sui_decimals: int = 9

    # Relay policy
    confirmations_required: int = Field(default=5, ge=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    subscription_interval_seconds: float = Field(default=2.0, gt=0)
    deferred_recheck_seconds: float = Field(default=12.0, gt=0)
    deferred_max_age_seconds: float = Field(default=3600.0, gt=0)
    event_page_size: int = Field(default=50, ge=1, le=1000)
    lookback_blocks: int = Field(default=100, ge=0)

    # External call deadlines and retry
    rpc_timeout_seconds: float = Field(default=30.0, gt=0)
    submit_timeout_seconds: float = Field(default=180.0, gt=0)
    query_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)

    # Dedup store
    database_url: str = "sqlite:///./relayer.db"

    # Liveness probe
    health_enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3001

    # Logging
    log_format: str = Field(default="console", description="console or json")
    status_interval_seconds: float = Field(default=60.0, gt=0)

    @property
    def receipt_timeout_seconds(self) -> float:
        """
        Budget for waiting on an Ethereum mint receipt.

        Building and sending take up to one RPC timeout each; one more is
        kept as slack so the client's own timeout (which knows the tx hash)
        fires before the outer submission deadline.
        """
        return self.submit_timeout_seconds - 3 * self.rpc_timeout_seconds


REQUIRED_SETTINGS = {
    "eth_rpc_url": "ETH_RPC_URL",
    "eth_contract_address": "ETH_CONTRACT_ADDRESS",
    "eth_private_key": "ETH_PRIVATE_KEY",
    "sui_package_id": "SUI_PACKAGE_ID",
    "sui_bridge_auth_id": "SUI_BRIDGE_AUTH_ID",
    "sui_private_key": "SUI_PRIVATE_KEY",
}


@dataclass
class RelayerConfig:
    """Validated relayer configuration."""

    settings: Settings
    sui_keypair: SuiKeypair

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelayerConfig":
        """
        Validate settings.

        Raises:
            StartupConfigError: if anything required is missing or malformed
        """
        missing = [env for attr, env in REQUIRED_SETTINGS.items() if not getattr(settings, attr)]
        if missing:
            raise StartupConfigError(
                "Missing required environment variables: " + ", ".join(missing)
            )

        if not Web3.is_address(settings.eth_contract_address):
            raise StartupConfigError(
                f"ETH_CONTRACT_ADDRESS is not an address: {settings.eth_contract_address}"
            )

        try:
            Account.from_key(settings.eth_private_key)
        except (ValueError, TypeError) as e:
            raise StartupConfigError(f"ETH_PRIVATE_KEY is invalid: {e}") from e

        try:
            sui_keypair = SuiKeypair.from_string(settings.sui_private_key)
        except ValueError as e:
            raise StartupConfigError(f"SUI_PRIVATE_KEY is invalid: {e}") from e

        if settings.receipt_timeout_seconds <= 0:
            raise StartupConfigError(
                "SUBMIT_TIMEOUT_SECONDS must exceed three times RPC_TIMEOUT_SECONDS "
                f"(got {settings.submit_timeout_seconds} and {settings.rpc_timeout_seconds})"
            )

        if settings.log_format not in ("console", "json"):
            raise StartupConfigError(f"LOG_FORMAT must be console or json, got {settings.log_format}")

        return cls(settings=settings, sui_keypair=sui_keypair)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """Load configuration from environment (and an optional .env file)."""
        try:
            settings = Settings(_env_file=env_path) if env_path else Settings()
        except ValidationError as e:
            raise StartupConfigError(f"Invalid configuration: {e}") from e
        return cls.from_settings(settings)
