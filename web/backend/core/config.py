"""Bulk action service configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebSettings(BaseSettings):
    """Settings for the HTTP service and its background workers."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # App
    debug: bool = Field(default=False, alias="WEB_DEBUG")
    host: str = Field(default="0.0.0.0", alias="WEB_HOST")
    port: int = Field(default=3000, alias="WEB_PORT")

    # CORS
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="WEB_CORS_ORIGINS"
    )

    # Database (shared with scripts)
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # Rate limiter storage; in-memory when unset
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    rate_limit: str = Field(default="100/minute", alias="RATE_LIMIT")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_interval_seconds: int = Field(default=60, alias="SCHEDULER_INTERVAL_SECONDS")

    # Work queue
    queue_poll_interval: float = Field(default=1.0, alias="QUEUE_POLL_INTERVAL")
    queue_concurrency: int = Field(default=2, alias="QUEUE_CONCURRENCY")
    queue_stall_timeout_seconds: int = Field(default=300, alias="QUEUE_STALL_TIMEOUT_SECONDS")

    # CSV ingestion
    file_batch_size: int = Field(default=1000, alias="FILE_PROCESSING_BATCH_SIZE")
    max_inflight_batches: int = Field(default=2, alias="FILE_MAX_INFLIGHT_BATCHES")
    upload_max_bytes: int = Field(default=5 * 1024 * 1024, alias="UPLOAD_MAX_BYTES")

    # Duplicate-email index; 0 = unbounded
    dedup_max_keys: int = Field(default=0, alias="DEDUP_MAX_KEYS")

    @field_validator("file_batch_size", "max_inflight_batches", "queue_concurrency", mode="after")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError(f"must be >= 1, got: {v}")
        return v

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins_raw:
            return []
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]

    @property
    def dedup_bound(self) -> Optional[int]:
        return self.dedup_max_keys or None


@lru_cache()
def get_web_settings() -> WebSettings:
    """Get cached web settings."""
    return WebSettings()
