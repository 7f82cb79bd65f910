"""
Application Configuration

Uses Pydantic Settings for type-safe configuration.
"""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import AliasChoices, Field, field_validator, ConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    # === Core ===
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # === Database ===
    database_url: str = Field(
        default="sqlite:///./soundfeed.db",
        description="Database connection URL"
    )

    # === Spotify ===
    spotify_client_id: Optional[str] = Field(default=None)
    spotify_client_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("spotify_client_secret", "spotify_secret")
    )
    spotify_api_url: str = Field(default="https://api.spotify.com/v1")
    spotify_accounts_url: str = Field(default="https://accounts.spotify.com")

    # === Timeouts ===
    request_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single upstream HTTP call"
    )
    sync_timeout_seconds: float = Field(
        default=60.0,
        description="Default deadline for one sync invocation"
    )
    default_token_lifetime_seconds: int = Field(
        default=3600,
        description="Used when the provider omits expires_in"
    )

    # === Rate Limiting (outbound, per process) ===
    rate_limit_requests: int = Field(default=150)
    rate_limit_window_seconds: int = Field(default=30)

    # === Background sync ===
    background_sync_enabled: bool = Field(default=False)
    background_sync_interval_seconds: int = Field(default=3600)
    background_sync_concurrency: int = Field(default=4)

    # === Internal API ===
    internal_api_key: Optional[str] = Field(
        default=None,
        description="Shared key for the sync endpoints (X-API-Key)"
    )

    @field_validator('database_url')
    @classmethod
    def fix_postgres_url(cls, v: str) -> str:
        """Fix Render/Railway postgres:// URL to postgresql://"""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
