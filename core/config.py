"""
Application configuration for the Audio Feed API.

All settings are read from environment variables (or a local `.env` file) via
`pydantic-settings`. A single cached instance is shared by the whole process;
tests that need different values call `get_settings.cache_clear()` after
patching the environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Application
    app_name: str = "Audio Feed API"
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = "/var/log/audio_feed_api/app.log"

    # Security
    api_key: Optional[str] = None
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:3001",
    ]

    # Database
    database_url: str = "sqlite+aiosqlite:///./audio_feed.db"

    # Object storage
    storage_backend: str = Field(default="local")  # local, memory, s3
    storage_root: str = "./media"
    public_base_url: str = "http://localhost:8002/media"
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None
    s3_endpoint: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    max_upload_bytes: int = 25 * 1024 * 1024

    # Feeds and comments
    default_page_size: int = 20
    max_page_size: int = 100
    trending_size: int = 10
    max_comment_length: int = 2000
    subscription_queue_size: int = 256

    # Counter engine
    counter_max_retries: int = 5
    counter_retry_backoff_ms: int = 20
    operation_timeout_seconds: float = 10.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
