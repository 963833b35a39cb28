"""
Application settings using Pydantic.

Provides environment-based configuration loading with PROVISIONER_ prefix.
Backoff, attempt caps and circuit breaker thresholds are all tunable here
rather than hard-coded in the components that use them.
"""

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "postgresql+psycopg://localhost/provisioner"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    # AWS
    aws_region: str = "us-east-1"

    # Queue settings
    sqs_queue_url: str | None = None
    job_queue_backend: str = "memory"  # memory, sqs

    # Task poller: delay = min(base * 2**attempt, max) + jitter
    poll_initial_delay: float = 5.0
    poll_base_delay: float = 2.0
    poll_max_delay: float = 300.0
    poll_jitter_ratio: float = 0.5
    poll_max_attempts: int = 30

    # Provider submission (provision/suspend/... calls)
    dispatch_max_attempts: int = 5

    # Circuit breaker, one instance per driver
    breaker_failure_ratio: float = 0.5
    breaker_min_calls: int = 5
    breaker_window_seconds: float = 60.0
    breaker_cooldown_seconds: float = 30.0

    # Credential vault (Fernet key, urlsafe base64)
    vault_key: str | None = None

    # Audit ledger
    audit_hash_provider_ids: bool = True

    # HTTP client settings (reference drivers)
    http_timeout: int = 30
    http_max_retries: int = 3
    http_retry_backoff_factor: float = 0.5

    # Webhooks
    webhook_tolerance_seconds: int = 300

    # Driver id -> driver config ({"kind": "rest", "base_url": ..., ...})
    drivers: dict[str, dict[str, Any]] = {}

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "PROVISIONER_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
