"""
Runtime configuration loaded from the environment (prefix ``SHARE_CREDITS_``).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class RepeatFailurePolicy(str, Enum):
    """What a second payment-failure signal does while already past due."""

    KEEP_DEADLINE = "keep_deadline"
    EXTEND_DEADLINE = "extend_deadline"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHARE_CREDITS_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # Storage
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "share_credits"
    MONGO_USE_TRANSACTIONS: bool = True
    LEDGER_LOG_PATH: str = "logs/share_credit_ledger.log"

    # Subscription lifecycle
    GRACE_PERIOD_DAYS: int = 3
    TRIAL_DAYS: int = 3
    REPEAT_PAYMENT_FAILURE_POLICY: RepeatFailurePolicy = RepeatFailurePolicy.KEEP_DEADLINE
    GRACE_WARNING_HOURS: int = 24

    # Ledger
    COMPENSATION_MAX_ATTEMPTS: int = 3

    # Background sweep
    SCHEDULER_ENABLED: bool = True
    SWEEP_INTERVAL_MINUTES: int = 60

    # HTTP
    USER_ID_HEADER: str = "X-User-Id"
    LOG_LEVEL: str = "INFO"


settings = Settings()
