"""Shared configuration for modules used by the API process and scripts.

Contains ONLY fields needed by shared modules (database, logger).
The web backend has its own extended Settings class for
process-specific configuration.
"""
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root
_BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(_BASE_DIR / ".env")


class SharedSettings(BaseSettings):
    """Settings shared between the web backend and maintenance scripts."""

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_dir: str | None = Field(default=None, alias="LOG_DIR")

    # Database
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    db_pool_min_size: int = Field(default=2, alias="DB_POOL_MIN_SIZE")
    db_pool_max_size: int = Field(default=10, alias="DB_POOL_MAX_SIZE")
    db_connect_retries: int = Field(default=5, alias="DB_CONNECT_RETRIES")

    @property
    def database_enabled(self) -> bool:
        """Whether a database is configured."""
        return bool(self.database_url)

    model_config = SettingsConfigDict(
        env_file=_BASE_DIR / ".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )


@lru_cache
def get_shared_settings() -> SharedSettings:
    return SharedSettings()
