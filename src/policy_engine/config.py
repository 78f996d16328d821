"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Limit ledger window settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    default_timezone: str = "Africa/Freetown"  # used when an account has no timezone


class PolicySettings(BaseSettings):
    """Money-movement policy parameters.

    Controls how missing configuration is treated, the precision amounts are
    posted at, and which platform accounts collect fees or fund cashback.
    All fields configurable via POLICY_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="POLICY_")

    fail_closed_on_missing_fee: bool = True
    amount_quantum: Decimal = Decimal("0.0001")  # DECIMAL(18, 4) columns
    rate_quantum: Decimal = Decimal("0.00000001")  # DECIMAL(18, 8) columns
    fee_account_id: str | None = None
    cashback_account_id: str | None = None


class StorageSettings(BaseSettings):
    """Configuration store and transaction log backend."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    backend: Literal["memory", "sqlite"] = "memory"
    db_path: str = "data/policy.db"


class ApiSettings(BaseSettings):
    """HTTP API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    ledger: LedgerSettings = LedgerSettings()
    policy: PolicySettings = PolicySettings()
    storage: StorageSettings = StorageSettings()
    api: ApiSettings = ApiSettings()
