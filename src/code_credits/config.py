"""
Runtime configuration for the credit and subscription engine.
"""

from __future__ import annotations

from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class DowngradePolicy(str, Enum):
    # Switch to the lower plan right away for the rest of the paid term
    IMMEDIATE = "immediate"
    # Refuse mid-term downgrades; allowed once the current term has ended
    END_OF_TERM = "end_of_term"


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    # Persistence
    MONGO_URI: str = ""
    MONGO_DB: str = "code_credits"
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Execution delegate
    EXECUTION_GATEWAY_URL: str = "http://127.0.0.1:8080"
    EXECUTION_TIMEOUT_SECONDS: float = 30.0

    # Pricing (integer paisa, never floating currency)
    CREDIT_PRICE_IN_PAISA: int = 50
    MIN_DEPOSIT_IN_PAISA: int = 10000

    # Subscription rules
    CANCELLATION_WINDOW_HOURS: int = 24
    DOWNGRADE_POLICY: DowngradePolicy = DowngradePolicy.IMMEDIATE

    # Background sweeps
    SWEEPS_ENABLED: bool = True
    ACTIVATION_SWEEP_INTERVAL_MINUTES: int = 60
    RENEWAL_SWEEP_INTERVAL_MINUTES: int = 1440
    PROMOTION_SWEEP_INTERVAL_MINUTES: int = 1440

    # Per-user serialization
    USER_LOCK_TTL_SECONDS: int = 60
    USER_LOCK_WAIT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
