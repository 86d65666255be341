"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["development", "test", "production"] = Field(default="development")

    # Public URL the widget uses to reach this relay (served in client configs)
    public_base_url: str = Field(default="http://localhost:8000/api/v1")

    # Connection profiles (JSON file, keyed by instance id)
    instances_file: str | None = Field(default=None)

    # Relay timeouts (profile values are clamped into this range)
    relay_default_timeout_seconds: float = Field(default=30.0)
    relay_min_timeout_seconds: float = Field(default=1.0)
    relay_max_timeout_seconds: float = Field(default=120.0)

    # Outbound message limits
    max_message_length: int = Field(default=4000)

    # User-facing error templates, keyed by error kind (e.g. {"TIMEOUT": "..."})
    error_messages: dict[str, str] = Field(default_factory=dict)

    # API Settings
    cors_origins: list[str] = Field(default=["http://localhost:5173", "http://localhost:3000"])
    rate_limit_per_minute: int = Field(default=60)
    rate_limit_burst: int = Field(default=10)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    def clamp_timeout(self, seconds: float | None) -> float:
        """Bound a profile timeout to the configured relay range."""
        value = self.relay_default_timeout_seconds if seconds is None else float(seconds)
        return max(self.relay_min_timeout_seconds, min(self.relay_max_timeout_seconds, value))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
