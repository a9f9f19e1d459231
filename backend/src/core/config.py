"""Application configuration using pydantic-settings."""
from functools import lru_cache
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str
    db_pool_size: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")

    # Identity provider (GoTrue-compatible auth endpoint and its public key)
    auth_url: str = Field(default="http://localhost:54321", validation_alias="AUTH_URL")
    auth_anon_key: str = Field(default="", validation_alias="AUTH_ANON_KEY")
    auth_timeout_seconds: float = Field(default=10.0, validation_alias="AUTH_TIMEOUT_SECONDS")
    oauth_provider: str = Field(default="google", validation_alias="OAUTH_PROVIDER")

    # Public origin used to build the OAuth callback URL. Empty = request origin.
    site_url: str = Field(default="", validation_alias="SITE_URL")

    # Deployment environment - "development" enables the local redirect rule
    # in the auth callback and non-secure session cookies
    environment: Literal["development", "production"] = Field(
        default="production", validation_alias="APP_ENV",
    )

    # Redis - change event fan-out across processes
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")

    # Live list event streams: idle seconds between keep-alive comments
    sse_keepalive_seconds: float = Field(default=15.0, validation_alias="SSE_KEEPALIVE_SECONDS")

    # Field length limits
    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")

    @model_validator(mode="after")
    def validate_development_security(self) -> "Settings":
        """
        Prevent the development environment from being used with a production database.

        Development mode issues non-secure session cookies and trusts the request
        origin for auth redirects, so it must only be used against local databases.
        """
        if self.environment != "development":
            return self

        try:
            parsed = urlparse(self.database_url)
            hostname = parsed.hostname or ""
        except Exception:
            # If we can't parse the URL, block development mode (fail-safe)
            hostname = ""

        # sqlite URLs have no host and are always local
        if self.database_url.startswith("sqlite"):
            return self

        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname.lower() not in local_hosts:
            raise ValueError(
                f"APP_ENV=development cannot be used with a non-local database. "
                f"Database host '{hostname}' appears to be a production database.",
            )

        return self

    @property
    def is_local_env(self) -> bool:
        """True when running in the local development environment."""
        return self.environment == "development"

    @property
    def secure_cookies(self) -> bool:
        """Session cookies are marked Secure everywhere except local development."""
        return not self.is_local_env


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
