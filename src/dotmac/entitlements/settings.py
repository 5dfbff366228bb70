"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: DATABASE__URL=postgresql+asyncpg://...
"""

from enum import Enum
from typing import Any

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
    """Entitlement engine settings.

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

    app_name: str = Field("dotmac-entitlements", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field(
            "sqlite+aiosqlite:///./entitlements.db",
            description="Async SQLAlchemy database URL",
        )
        echo: bool = Field(False, description="Echo SQL statements")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Effective Permission Cache
    # ============================================================

    class CacheSettings(BaseModel):
        """Effective-permission cache configuration."""

        enabled: bool = Field(False, description="Cache resolved effective permissions")
        ttl_seconds: int = Field(300, ge=1, description="Entry time to live in seconds")
        max_entries: int = Field(10_000, ge=1, description="Maximum cached users")

    cache: CacheSettings = CacheSettings()  # type: ignore[call-arg]

    # ============================================================
    # Audit Log
    # ============================================================

    class AuditSettings(BaseModel):
        """Audit log configuration."""

        enabled: bool = Field(True, description="Persist audit records for mutations")
        query_batch_size: int = Field(
            100, ge=1, le=10_000, description="Rows fetched per round trip when streaming"
        )

    audit: AuditSettings = AuditSettings()  # type: ignore[call-arg]

    # ============================================================
    # Bulk Updates
    # ============================================================

    class BulkSettings(BaseModel):
        """Bulk update coordinator configuration."""

        max_attempts: int = Field(
            3, ge=1, le=20, description="Read-validate-write passes per target before reporting a conflict"
        )

    bulk: BulkSettings = BulkSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Accept environment names in any case."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
