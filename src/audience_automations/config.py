"""Configuration management for Audience Automations.

This module handles engine configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings with environment variable support.

    All settings can be overridden via environment variables with
    the AUTOMATIONS_ prefix (e.g., AUTOMATIONS_BATCH_SIZE).
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOMATIONS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///automations.sqlite3",
        description="SQLAlchemy URL of the contact/automation/ledger store",
    )

    # Batch sweep configuration
    batch_size: int = Field(
        default=75,
        ge=1,
        description="Number of pending contacts fetched per page during a step sweep",
    )
    job_attempts: int = Field(
        default=3,
        ge=1,
        description="Delivery attempts for per-contact step jobs",
    )
    job_retry_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Initial delay before a failed job is retried",
    )
    job_retry_backoff: float = Field(
        default=2.0,
        ge=1,
        description="Multiplier for the retry delay after each failed attempt",
    )

    # Wait steps
    wait_recheck_seconds: int = Field(
        default=60,
        ge=1,
        description="Delay before a wait-step sweep re-checks contacts that are still pending",
    )
    wait_max_recheck_attempts: int = Field(
        default=10,
        ge=0,
        description="Maximum number of times a wait-step sweep re-enqueues itself",
    )
    wait_sweep_granularity_seconds: int = Field(
        default=60,
        ge=1,
        description=(
            "Resume times of waiting contacts are rounded up to this granularity so that "
            "contacts resuming close together share a single sweep job"
        ),
    )

    # Worker configuration
    worker_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds the worker sleeps when no job is due",
    )
    worker_batch_size: int = Field(
        default=50,
        ge=1,
        description="Maximum number of due jobs claimed per worker poll",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached engine settings.

    Returns:
        Settings: Engine settings instance.
    """
    return Settings()
