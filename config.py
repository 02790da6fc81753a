from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DistributionStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"
    RANDOM = "random"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Master switch: when off, matching is "first match wins" without capacity,
    # fairness, rebalancing or redistribution.
    distribution_enabled: bool = True

    max_deliverer_capacity: int = Field(default=1, ge=1)
    distribution_strategy: DistributionStrategy = DistributionStrategy.ROUND_ROBIN

    rebalancing_enabled: bool = True
    redistribution_enabled: bool = True
    auto_reject_when_no_alternatives: bool = True
    max_redistribution_attempts: int = Field(default=3, ge=1)

    # Reserve a slot under a per-deliverer lock instead of count-then-insert.
    strict_capacity: bool = True

    round_robin_ttl_seconds: int = 60 * 60 * 24
    redis_url: Optional[str] = None

    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    log_capacity_events: bool = True
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Read settings from the environment on every call so knobs can change without a restart."""
    return Settings()
