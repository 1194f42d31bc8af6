"""
Configuration and settings for the BloomFund backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(name: str, field_name: str) -> AliasChoices:
    return AliasChoices(name, field_name)


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service.

    Most settings are read from the upper-cased field name (``DATABASE_URL``,
    ``REDIS_URL``...). Settings whose variable differs from the field name
    declare it with a validation alias.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Database (Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible object storage for campaign media
    storage_bucket: Optional[str] = Field(default=None)
    storage_endpoint: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_public_base_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    max_upload_bytes: int = Field(default=10 * 1024 * 1024)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=_env("BLOOMFUND_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"),
    )

    # Analytics event buffer (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_events_key: str = Field(default="bloomfund:analytics")
    analytics_batch_size: int = Field(default=50)

    # Read cache and remote-call retries
    cache_ttl_seconds: float = Field(default=300.0)
    retry_attempts: int = Field(default=3)

    rate_limit_enabled: bool = Field(default=True)

    # Shared secret for the payment integration (pledge confirmation, payout settlement)
    payments_webhook_secret: Optional[str] = Field(
        default=None,
        validation_alias=_env("BLOOMFUND_PAYMENTS_WEBHOOK_SECRET", "payments_webhook_secret"),
    )

    # Request monitoring window
    monitoring_window_size: int = Field(default=1000)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
