"""
Configuration and settings for the poll service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Environment-backed settings for the FastAPI service. Field names map to
    environment variables case-insensitively (``DATABASE_URL`` -> database_url).
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    app_url: str = Field(default="http://localhost:3000")
    environment: str = Field(default="production")
    log_level: str = Field(default="INFO")

    # Relational storage (the platform's Postgres)
    database_url: Optional[str] = Field(default=None)

    # Hosted identity service
    auth_url: Optional[str] = Field(default=None)
    auth_api_key: Optional[str] = Field(default=None)
    auth_timeout_seconds: float = Field(default=10.0)

    # S3-compatible storage for QR code images
    storage_endpoint: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_bucket: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "POLLBOARD_USE_IN_MEMORY_BACKENDS", "USE_IN_MEMORY_BACKENDS"
        ),
    )

    # Rate limit counters (Redis)
    redis_url: Optional[str] = Field(default=None)
    rate_limit_key_prefix: str = Field(default="pollboard:ratelimit")

    # Request hardening
    magic_link_ttl_minutes: int = Field(default=15)
    max_request_bytes: int = Field(default=1024 * 1024)
    require_csrf: bool = Field(default=False)

    # Session cookie
    session_cookie_name: str = Field(default="access_token")
    pkce_cookie_name: str = Field(default="auth_code_verifier")
    cookie_secure: bool = Field(default=True)

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
