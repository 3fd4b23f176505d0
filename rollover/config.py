"""
Configuration and settings for the rollover engine.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the rollover engine and its scripts."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Document store (any SQLAlchemy URL; Postgres expected in production)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Queue (Redis) for opportunistic per-user rollovers
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="rollover:users")
    redis_pending_ttl_seconds: int = Field(default=3600, ge=1)

    # Eventual-consistency retry policy
    consistency_max_retries: int = Field(default=3, ge=0)
    consistency_base_delay_ms: int = Field(default=800, ge=0)
    consistency_backoff_factor: float = Field(default=2.0, ge=1.0)
    rollover_deadline_seconds: float = Field(default=30.0, gt=0)

    # Batch driver
    batch_max_workers: int = Field(default=1, ge=1)
    daemon_interval_seconds: int = Field(default=3600, ge=1)
    daemon_jitter_seconds: int = Field(default=120, ge=0)

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
