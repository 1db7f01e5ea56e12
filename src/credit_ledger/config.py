from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CREDIT_", env_file=".env", extra="ignore"
    )

    # Storage; without a URI the in-memory backend is used
    MONGO_URI: str | None = None
    MONGO_DB: str = "credit_ledger"

    # Logging
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"
    LOG_LEVEL: str = "INFO"

    # Consumption
    CONSUMPTION_POLICY: str = Field(
        default="expiring_first",
        description="Batch selection order: expiring_first or fifo.",
    )
    RESERVATION_TIMEOUT_SECONDS: int = 30 * 60

    # Balance projection
    EXPIRING_SOON_DAYS: int = 7
    LOW_CREDIT_THRESHOLD: int = 10
    BALANCE_CACHE_TTL_SECONDS: int = 300

    # Per-account lock
    LOCK_TIMEOUT_SECONDS: float = 10.0
    LOCK_LEASE_SECONDS: float = 30.0

    # Sweeper
    SWEEPER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: float = 60.0
    SWEEP_MAX_ATTEMPTS: int = 3
    SWEEP_BACKOFF_SECONDS: float = 1.0

    # Notifications; the in-process queue keeps only this many recent messages
    NOTIFICATION_HISTORY_SIZE: int = 100

    # History
    HISTORY_PAGE_SIZE: int = 50
    HISTORY_MAX_PAGE_SIZE: int = 100

    # Task charging middleware; disabled while no prefix is set
    CHARGED_PATH_PREFIX: str | None = None
    DEFAULT_TASK_COST: int = 1


@lru_cache()
def get_settings() -> Settings:
    return Settings()
