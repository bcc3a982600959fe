"""Configuration settings for the rebate ledger."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Flat settings read from environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Ledger arithmetic
    balance_epsilon: Decimal = Field(
        default=Decimal("0.01"),
        validation_alias="LEDGER_BALANCE_EPSILON",
        description="Drift above this amount is persisted by the reconciler",
    )
    settled_threshold: Decimal = Field(
        default=Decimal("0.01"),
        validation_alias="LEDGER_SETTLED_THRESHOLD",
        description="Receivables at or below this balance are settled",
    )
    writeoff_rate_policy: Literal["consumption", "receivable"] = Field(
        default="consumption",
        validation_alias="LEDGER_WRITEOFF_RATE_POLICY",
        description="Which rebate rate drives the write-off ratio",
    )
    default_currency: str = Field(default="USD", validation_alias="LEDGER_DEFAULT_CURRENCY")

    # Back-office API (HTTP store)
    api_url: str = Field(default="http://localhost:3000", validation_alias="LEDGER_API_URL")
    api_token: SecretStr | None = Field(default=None, validation_alias="LEDGER_API_TOKEN")
    api_timeout: float = Field(default=30.0, validation_alias="LEDGER_API_TIMEOUT")
    api_max_retries: int = Field(default=3, validation_alias="LEDGER_API_MAX_RETRIES")

    # Settlement staging journal; in-memory when unset
    staging_dir: Path | None = Field(default=None, validation_alias="LEDGER_STAGING_DIR")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> LedgerSettings:
    """Get cached settings instance."""
    return LedgerSettings()
