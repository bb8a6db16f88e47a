"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Counting store
    store_backend: str = "memory"  # "memory" or "redis"
    redis_url: str | None = None  # e.g. redis://localhost:6379/1
    redis_prefix: str = "ratelimit:"
    redis_max_connections: int = 10
    store_timeout_seconds: float = 0.5  # Upper bound on any Redis round trip
    fallback_retry_seconds: float = 5.0  # Skip Redis this long after a failure

    # Background sweep
    cleanup_interval_seconds: float = 60.0

    # Exponential backoff
    backoff_max_ms: int = 60 * 60 * 1000  # 1 hour
    backoff_max_entries: int = 10_000

    # Admin bypass
    admin_api_key: str | None = None
    admin_user_ids: list[str] = []

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
