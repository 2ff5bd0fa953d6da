"""
Centralized configuration management for the metering engine.

Pydantic Settings-based configuration that:
- Validates environment variables at startup
- Groups related settings
- Exposes properties to check which backends are configured
- Supports .env file loading

The tier table is static code (metering.usage.plans) and is never read from
the environment.

Usage:
    from metering.config import get_settings

    settings = get_settings()
    if settings.is_database_configured:
        ...
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Database Settings (Postgres)
# =============================================================================


class DatabaseSettings(BaseSettings):
    """Configuration for the Postgres usage store."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="Postgres connection URL (pooler URL is fine)",
    )
    database_url_direct: Optional[str] = Field(
        default=None,
        description="Direct (non-pooler) Postgres URL, preferred when set",
    )
    database_pool_min_size: int = Field(default=1, ge=1)
    database_pool_max_size: int = Field(default=5, ge=1)

    @property
    def dsn(self) -> Optional[str]:
        """Prefer a direct URL for long-lived backends if provided."""
        return self.database_url_direct or self.database_url

    @property
    def is_configured(self) -> bool:
        return bool(self.dsn)


# =============================================================================
# Redis Settings (Optional)
# =============================================================================


class RedisSettings(BaseSettings):
    """Configuration for Redis (optional usage cache)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL",
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.redis_url)


# =============================================================================
# Metering Settings
# =============================================================================


class MeteringSettings(BaseSettings):
    """Tunables for caching, retries and alerting."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    usage_cache_ttl_seconds: int = Field(
        default=120,
        ge=1,
        le=300,
        description="Usage cache time-to-live; must stay well below one day",
    )
    usage_cache_max_size: int = Field(
        default=10_000,
        ge=1,
        description="Maximum entries in the in-process usage cache",
    )
    increment_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a usage increment before accounting is deferred",
    )
    increment_retry_base_delay: float = Field(
        default=0.05,
        ge=0,
        description="Base delay in seconds for exponential retry backoff",
    )
    overage_alert_threshold: float = Field(
        default=80.0,
        ge=0,
        le=100,
        description="Monthly usage percentage that triggers an alert log",
    )
    cron_secret: Optional[SecretStr] = Field(
        default=None,
        description="Bearer secret required by the billing-period reset endpoint",
    )


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Configuration for logging."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log format in development",
    )
    environment: str = Field(
        default="development",
        description="Deployment environment name",
    )
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error reporting from the API layer",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")


# =============================================================================
# Main Settings Class
# =============================================================================


class Settings(BaseSettings):
    """Aggregate of all configuration groups."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    metering: MeteringSettings = Field(default_factory=MeteringSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_database_configured(self) -> bool:
        return self.database.is_configured

    @property
    def is_redis_configured(self) -> bool:
        return self.redis.is_configured

    def get_config_summary(self) -> dict:
        """Configuration status for startup logging, without secrets."""
        return {
            "environment": self.logging.environment,
            "database_configured": self.is_database_configured,
            "redis_configured": self.is_redis_configured,
            "usage_cache_ttl_seconds": self.metering.usage_cache_ttl_seconds,
            "increment_max_attempts": self.metering.increment_max_attempts,
            "cron_secret_configured": self.metering.cron_secret is not None,
            "log_level": self.logging.log_level,
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Get the settings singleton.

    Call get_settings.cache_clear() (or reload_settings()) to reload.
    """
    return Settings()


def reload_settings() -> Settings:
    """Reload settings from the environment."""
    get_settings.cache_clear()
    return get_settings()
