"""Configuration management using Pydantic Settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Video provider (Daily.co compatible REST API)
    daily_api_key: Optional[str] = Field(None, description="Bearer credential for the video provider")
    daily_api_url: str = Field("https://api.daily.co/v1", description="Video provider API base URL")
    video_room_ttl_seconds: int = Field(86400, gt=0, description="Lifetime of newly created video rooms")

    # Authoritative datastore (PostgREST compatible)
    store_url: Optional[str] = Field(None, description="Base URL of the datastore")
    store_api_key: Optional[str] = Field(None, description="Anonymous/public API key of the datastore")
    store_access_token: Optional[str] = Field(None, description="Access token of the signed-in user")
    store_poll_interval: float = Field(2.0, gt=0, description="Seconds between change-feed polls")

    # Timeouts and retries
    request_timeout: float = Field(10.0, gt=0)
    max_retries: int = Field(3, ge=1, le=10)
    retry_backoff_factor: float = Field(0.5, gt=0)
    retry_max_wait: float = Field(10.0, gt=0)

    # Mirror refetch-on-invalidation limits
    mirror_refetch_rate: float = Field(2.0, gt=0, description="Refetches per second")
    mirror_refetch_burst: int = Field(3, ge=1)
    mirror_max_refetch_retries: int = Field(3, ge=1, le=10)

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")


# Instantiate global settings
settings = Settings()
