"""
Application settings loaded from environment variables.
Uses pydantic-settings for validation and type coercion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (trade ledger)
    database_url: str = "sqlite:///trades_real.db"

    # Polymarket CLOB
    polymarket_private_key: Optional[str] = None
    polymarket_funder_address: Optional[str] = None
    polymarket_signature_type: int = 0
    polymarket_clob_host: str = "https://clob.polymarket.com"
    polymarket_chain_id: int = 137
    polymarket_ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"

    # Rate limiting
    clob_max_rate: float = 10.0
    clob_burst: int = 5
    clob_acquire_timeout: float = 10.0

    # Application
    log_level: str = "INFO"
    log_file: Optional[str] = None
    trading_config_path: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("polymarket_signature_type")
    @classmethod
    def check_signature_type(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError(f"signature type must be 0, 1 or 2, got {v}")
        return v

    @property
    def has_trading_credentials(self) -> bool:
        return bool(self.polymarket_private_key)

    @property
    def config_path(self) -> Optional[Path]:
        """Return Path object for the trading config JSON, if set."""
        return Path(self.trading_config_path) if self.trading_config_path else None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
