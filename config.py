"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from BITESPEED_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="BITESPEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_path: str = Field(default="contacts.db")
    busy_timeout_seconds: float = Field(default=5.0)

    # Retry of the identify transaction
    identify_max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=0.05)
    retry_max_delay: float = Field(default=1.0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
