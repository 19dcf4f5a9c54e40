"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

import re
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# User-friendly (base64url, 48 chars) or raw (workchain:hex) TON address
TON_ADDRESS_PATTERN = re.compile(r"^(?:[A-Za-z0-9_-]{48}|-?\d+:[0-9a-fA-F]{64})$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Database Configuration
    # ===================
    database_url: str = Field(..., description="PostgreSQL connection string")

    # ===================
    # TON Chain Data (tonapi.io)
    # ===================
    ton_api_url: str = Field(default="https://tonapi.io", description="TonApi base URL")
    ton_api_key: Optional[str] = Field(default=None, description="TonApi bearer token")
    ton_rpc_url: str = Field(
        default="https://mainnet-v4.tonhubapi.com",
        description="TON v4 RPC endpoint handed to the signer for message building",
    )

    # ===================
    # Exchanges
    # ===================
    dedust_api_url: str = Field(default="https://api.dedust.io", description="DeDust API URL")
    stonfi_api_url: str = Field(default="https://api.ston.fi", description="STON.fi API URL")
    slippage_percentage: Decimal = Field(
        default=Decimal("20"),
        ge=0,
        lt=100,
        description="Accepted slippage when computing the minimum swap output",
    )

    # ===================
    # Custody Signer (keys never leave the signer)
    # ===================
    signer_api_url: str = Field(default="http://localhost:8700", description="Custody signer base URL")
    signer_api_key: Optional[str] = Field(default=None, description="Custody signer API key")

    # ===================
    # Fees & Gas (TON)
    # ===================
    fee_recipient_wallet: str = Field(..., description="TON address receiving platform fees")
    transaction_fee_percentage: Decimal = Field(
        default=Decimal("0.01"),
        description="Platform fee as a fraction of the trade (0.01 = 1%)",
    )
    swap_gas_amount: Decimal = Field(default=Decimal("0.25"), description="Gas attached to a swap")
    transfer_gas_amount: Decimal = Field(default=Decimal("0.005"), description="Gas for a plain transfer")

    # ===================
    # Loops
    # ===================
    api_max_retries: int = Field(default=3, ge=1, le=10)
    pool_monitor_interval: float = Field(default=30.0, gt=0, description="Seconds between pool cycles")
    reconcile_interval: float = Field(default=10.0, gt=0, description="Seconds between reconcile cycles")
    trading_cycle_pause: float = Field(default=1.0, ge=0, description="Pause between trading cycles")
    trading_concurrency: int = Field(default=8, ge=1, le=128)
    pending_timeout_hours: int = Field(default=24, ge=1)
    exchange_max_failures: int = Field(default=5, ge=1)
    exchange_cooldown_cycles: int = Field(default=10, ge=1)

    # ===================
    # Strategy
    # ===================
    token_symbol_blacklist: str = Field(
        default="",
        description="Comma-separated symbol substrings rejected by blacklist conditions",
    )

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("transaction_fee_percentage")
    @classmethod
    def validate_fee_percentage(cls, v: Decimal) -> Decimal:
        """Fee must be a fraction in [0, 1)."""
        if v < 0 or v >= 1:
            raise ValueError("transaction_fee_percentage must be in [0, 1)")
        return v

    @field_validator("fee_recipient_wallet")
    @classmethod
    def validate_fee_recipient(cls, v: str) -> str:
        """Ensure the fee recipient looks like a TON address."""
        v = v.strip()
        if not TON_ADDRESS_PATTERN.match(v):
            raise ValueError("fee_recipient_wallet must be a valid TON address")
        return v

    @property
    def symbol_blacklist(self) -> list[str]:
        """Parse denylisted symbol fragments from comma-separated string."""
        if not self.token_symbol_blacklist:
            return []
        return [s.strip().lower() for s in self.token_symbol_blacklist.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
