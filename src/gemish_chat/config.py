"""
Application Configuration

Settings are read from environment variables prefixed with ``GEMISH_``
(or a local ``.env`` file).

Usage:
    from gemish_chat.config import get_settings
    print(get_settings().cache_ttl_seconds)
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the relay and its collaborators."""

    model_config = SettingsConfigDict(
        env_prefix="GEMISH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream provider
    gemini_api_key: Optional[str] = Field(default=None, description="Google Gemini API key")
    fast_model: str = Field(default="gemini-2.0-flash-lite")
    normal_model: str = Field(default="gemini-2.0-flash")

    # Store cache; history is append-only so staleness up to the ttl is tolerated
    cache_ttl_seconds: float = Field(default=3600, gt=0)

    # Relay
    smooth_delay_ms: int = Field(default=20, ge=0)
    turn_timeout_seconds: float = Field(default=30, gt=0)
    id_prefix: str = "msgs"
    id_separator: str = "_"

    # HTTP surface
    session_cookie_name: str = "gemish.session_token"
    cors_origins: List[str] = ["*"]


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
