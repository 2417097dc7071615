"""Application configuration using pydantic-settings.

One hot wallet (wallet v4r2, derived from a 24-word TON mnemonic) pays out
withdrawals; deposits are matched against the toncenter transaction feed.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/tonsettle.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    dry_run: bool = Field(
        default=False,
        description="Use the in-memory simulated chain instead of toncenter",
    )

    # ======================
    # Chain API (toncenter)
    # ======================
    ton_network: str = Field(default="mainnet", description="mainnet or testnet")
    toncenter_base_url: str = Field(
        default="https://toncenter.com/api/v2", description="toncenter v2 endpoint"
    )
    toncenter_v3_url: str = Field(
        default="https://toncenter.com/api/v3", description="toncenter v3 endpoint (jettons)"
    )
    toncenter_api_key: Optional[str] = Field(default=None, description="toncenter API key")
    chain_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single chain API call"
    )

    # ======================
    # Deposits
    # ======================
    deposit_ton_address: str = Field(
        default="", description="Address users send TON deposits to"
    )
    usdt_jetton_master: str = Field(
        default="", description="USDT jetton master contract address"
    )
    verify_lookback_tx_count: int = Field(
        default=20, description="Number of recent native transactions scanned per verification"
    )
    token_lookback_count: int = Field(
        default=50, description="Number of recent token transfers scanned per verification"
    )
    deposit_recheck_interval_seconds: float = Field(
        default=30.0, description="Seconds between re-verification passes over pending deposits"
    )

    # ======================
    # Hot Wallet
    # ======================
    wallet_mnemonic: Optional[str] = Field(
        default=None, description="24-word TON mnemonic of the hot wallet"
    )
    wallet_subwallet_id: int = Field(default=698983191, description="Wallet v4r2 subwallet id")
    wallet_workchain: int = Field(default=0, description="Hot wallet workchain")

    # ======================
    # Withdrawals
    # ======================
    withdraw_max_attempts: int = Field(default=3, description="Attempts before refund")
    withdraw_batch_size: int = Field(default=5, description="Requests claimed per pass")
    withdraw_interval_seconds: float = Field(default=3.0, description="Worker pass interval")
    withdraw_recovery_interval_seconds: float = Field(
        default=60.0, description="Stuck-request recovery interval"
    )
    withdraw_stuck_timeout_minutes: int = Field(
        default=10, description="PROCESSING requests older than this are reset"
    )
    withdraw_error_max_length: int = Field(
        default=500, description="Stored error messages are truncated to this length"
    )
    transfer_validity_seconds: int = Field(
        default=300, description="valid_until offset for signed transfers"
    )
    min_withdraw_ton_nano: int = Field(default=10_000_000, description="Minimum TON withdrawal")
    min_withdraw_usdt_micro: int = Field(default=1_000_000, description="Minimum USDT withdrawal")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_testnet(self) -> bool:
        return self.ton_network.lower() == "testnet"

    @property
    def has_wallet(self) -> bool:
        """Check if a hot wallet mnemonic is configured."""
        return bool(self.wallet_mnemonic)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "database_url": self._redact_url(self.database_url),
            "ton_network": self.ton_network,
            "toncenter": {
                "v2": self.toncenter_base_url,
                "v3": self.toncenter_v3_url,
                "api_key": "***" if self.toncenter_api_key else "(not set)",
            },
            "deposit_ton_address": self.deposit_ton_address or "(not set)",
            "usdt_jetton_master": self.usdt_jetton_master or "(not set)",
            "wallet_configured": self.has_wallet,
            "withdrawals": {
                "max_attempts": self.withdraw_max_attempts,
                "batch_size": self.withdraw_batch_size,
                "stuck_timeout_minutes": self.withdraw_stuck_timeout_minutes,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
