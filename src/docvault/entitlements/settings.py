"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: ENTITLEMENTS__GRACE_PERIOD_DAYS=3
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main engine settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("docvault-entitlements", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("docvault", description="Database name")
        username: str = Field("docvault", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Entitlement Engine Configuration
    # ============================================================

    class EntitlementSettings(BaseModel):
        """Trial lifecycle, seat and quota configuration."""

        trial_plan: str = Field("trial", description="Plan assigned at signup")
        read_only_plan: str = Field(
            "free", description="Plan an expired trial is downgraded to"
        )
        trial_days: int = Field(7, description="Trial duration in days")
        grace_period_days: int = Field(3, description="Grace period after trial end in days")
        invite_expiry_days: int = Field(7, description="Seat invite validity in days")
        link_token_expiry_days: int = Field(7, description="Account link token validity in days")
        reference_timezone: str = Field(
            "Europe/Berlin", description="Time zone used for monthly counter boundaries"
        )
        notification_interval_seconds: int = Field(
            3600, description="How often the lifecycle notification scheduler runs"
        )

        @field_validator(
            "grace_period_days",
            "trial_days",
            "invite_expiry_days",
            "link_token_expiry_days",
            "notification_interval_seconds",
        )
        @classmethod
        def validate_positive(cls, v: int) -> int:
            if v <= 0:
                raise ValueError("Durations must be positive")
            return v

    entitlements: EntitlementSettings = EntitlementSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability Configuration
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        enable_metrics: bool = Field(True, description="Enable metrics collection")
        otel_service_name: str = Field("docvault-entitlements", description="Service name")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reload settings from the environment (mainly for testing)."""
    global _settings, settings
    _settings = None
    settings = get_settings()


# Convenience export; modules read get_settings() so a reset is picked up
settings = get_settings()
