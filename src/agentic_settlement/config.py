"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup; if a setting is malformed, the process fails fast with a
clear error message.

Usage:
    from agentic_settlement.config import get_settings
    settings = get_settings()
    print(settings.sweep_interval_seconds)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for Agentic Settlement."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_log_level: str = "DEBUG"

    # --- Storage ---
    store_backend: Literal["memory", "database"] = "database"
    database_url: str = (
        "postgresql+asyncpg://settlement:settlement_dev"
        "@localhost:5432/agentic_settlement"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Events ---
    event_sink: Literal["log", "redis"] = "log"
    redis_url: str = "redis://localhost:6379/0"
    redis_event_stream: str = "settlement:events"
    redis_event_stream_maxlen: int = 100_000

    # --- Escrow Defaults ---
    default_token: str = "USDC"
    micropayment_timeout_minutes: int = 5

    # --- Negotiation Defaults ---
    default_quote_validity_minutes: int = 60
    # Added to the agreed delivery time to form the escrow's auto-refund timeout
    escrow_timeout_grace_minutes: int = 60

    # --- Sweep ---
    sweep_interval_seconds: float = 30.0

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def uses_database(self) -> bool:
        return self.store_backend == "database"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
