"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CACHE_CONFIG_PATH = Path(__file__).parent / "caching.yml"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./mantle.db",
        validation_alias="DATABASE_URL",
    )

    # Only paths under this prefix are rate limited and cached
    api_prefix: str = Field(default="/v2/", validation_alias="API_PREFIX")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS",
    )

    # Shared secret that resolves a request to the admin_username account
    admin_key: str = Field(default="", validation_alias="ADMIN_KEY")
    admin_username: str = Field(default="cloud", validation_alias="ADMIN_USERNAME")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Redis - for rate limiting and response caching
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")
    redis_timeout_seconds: float = Field(default=0.5, validation_alias="REDIS_TIMEOUT_SECONDS")

    # Global rate limits (authenticated vs anonymous callers)
    global_auth_limit_requests: int = Field(
        default=120, validation_alias="MANTLE2_GLOBAL_AUTH_LIMIT_REQUESTS",
    )
    global_auth_limit_window_seconds: int = Field(
        default=60, validation_alias="MANTLE2_GLOBAL_AUTH_LIMIT_WINDOW_SECONDS",
    )
    global_anon_limit_requests: int = Field(
        default=60, validation_alias="MANTLE2_GLOBAL_ANON_LIMIT_REQUESTS",
    )
    global_anon_limit_window_seconds: int = Field(
        default=60, validation_alias="MANTLE2_GLOBAL_ANON_LIMIT_WINDOW_SECONDS",
    )

    # When Redis is unreachable: True lets requests through, False rejects them
    rate_limit_fail_open: bool = Field(default=True, validation_alias="RATE_LIMIT_FAIL_OPEN")

    # Declarative response cache rules
    cache_config_path: Path = Field(
        default=DEFAULT_CACHE_CONFIG_PATH,
        validation_alias="CACHE_CONFIG_PATH",
    )

    @field_validator(
        "global_auth_limit_requests",
        "global_auth_limit_window_seconds",
        "global_anon_limit_requests",
        "global_anon_limit_window_seconds",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Rate limit requests and windows must be positive."""
        if value <= 0:
            raise ValueError("rate limit values must be greater than 0")
        return value

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, value: str) -> str:
        """The API prefix is matched with startswith, so it must be a full path segment."""
        if not value.startswith("/") or not value.endswith("/"):
            raise ValueError(f"API_PREFIX must start and end with '/': {value!r}")
        return value

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
