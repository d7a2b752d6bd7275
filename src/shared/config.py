"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for the Cold Caller data layer.

This module provides:
- Environment-based configuration, read once at process start
- Type-safe settings with validation
- Database connection and pool settings
- Cache pool, monitoring and backup settings
"""
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_ENV_CONFIG = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    model_config = _ENV_CONFIG

    # Primary database URL (takes precedence if set)
    database_url: Optional[str] = None

    db_dialect: str = "sqlite"
    db_sqlite_path: str = "data/coldcaller_dev.sqlite"

    # Individual server components (used for postgresql if DATABASE_URL not set)
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "coldcaller_prod"
    db_user: str = "postgres"
    db_password: str = ""
    db_ssl: bool = False
    db_echo: bool = False

    # Connection pool settings
    db_pool_max: int = 5
    db_pool_min: int = 0
    db_pool_acquire: int = 30000  # milliseconds
    db_pool_idle: int = 10000  # milliseconds

    # Connection retry settings
    db_retry_attempts: int = 5
    db_retry_delay: float = 1.0  # seconds, doubled after every failed attempt

    @field_validator("db_dialect")
    @classmethod
    def validate_dialect(cls, v):
        v = v.lower()
        if v not in ("sqlite", "postgresql"):
            raise ValueError("Dialect must be 'sqlite' or 'postgresql'")
        return v

    @field_validator("db_port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_size(cls, v):
        if v < 1:
            raise ValueError("Pool size must be at least 1")
        return v

    @field_validator("db_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        if v < 1:
            raise ValueError("At least one connection attempt is required")
        return v

    def get_database_url(self) -> str:
        """Get the complete database URL."""
        if self.database_url:
            return self.database_url

        if self.db_dialect == "sqlite":
            return f"sqlite+aiosqlite:///{self.db_sqlite_path}"

        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def get_database_name(self) -> str:
        """Get the logical database name used in backups and reports."""
        if self.db_dialect == "sqlite":
            if self.db_sqlite_path == ":memory:":
                return ":memory:"
            return Path(self.db_sqlite_path).name
        return self.db_name


class CacheSettings(BaseSettings):
    """Cache pool settings (TTL and check period in seconds)."""

    model_config = _ENV_CONFIG

    cache_leads_ttl: int = 300
    cache_leads_check_period: int = 60
    cache_leads_max_keys: int = 1000

    cache_contacts_ttl: int = 600
    cache_contacts_check_period: int = 120
    cache_contacts_max_keys: int = 2000

    cache_call_logs_ttl: int = 180
    cache_call_logs_check_period: int = 30
    cache_call_logs_max_keys: int = 500

    cache_stats_ttl: int = 60
    cache_stats_check_period: int = 15
    cache_stats_max_keys: int = 100

    cache_queries_ttl: int = 120
    cache_queries_check_period: int = 30
    cache_queries_max_keys: int = 500

    cache_preload_enabled: bool = True

    @field_validator(
        "cache_leads_ttl", "cache_contacts_ttl", "cache_call_logs_ttl",
        "cache_stats_ttl", "cache_queries_ttl",
        "cache_leads_max_keys", "cache_contacts_max_keys", "cache_call_logs_max_keys",
        "cache_stats_max_keys", "cache_queries_max_keys",
    )
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Cache TTLs and key limits must be positive")
        return v

    def pool_definitions(self) -> List[Dict[str, Any]]:
        """Get pool definitions in declaration order."""
        return [
            {"name": "leads", "ttl": self.cache_leads_ttl,
             "check_period": self.cache_leads_check_period, "max_keys": self.cache_leads_max_keys},
            {"name": "contacts", "ttl": self.cache_contacts_ttl,
             "check_period": self.cache_contacts_check_period, "max_keys": self.cache_contacts_max_keys},
            {"name": "callLogs", "ttl": self.cache_call_logs_ttl,
             "check_period": self.cache_call_logs_check_period, "max_keys": self.cache_call_logs_max_keys},
            {"name": "stats", "ttl": self.cache_stats_ttl,
             "check_period": self.cache_stats_check_period, "max_keys": self.cache_stats_max_keys},
            {"name": "queries", "ttl": self.cache_queries_ttl,
             "check_period": self.cache_queries_check_period, "max_keys": self.cache_queries_max_keys},
        ]


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    model_config = _ENV_CONFIG

    log_level: LogLevel = LogLevel.INFO
    log_format: Optional[str] = None  # json in production when unset
    log_file: Optional[str] = None

    slow_query_threshold_ms: float = 1000.0
    max_slow_queries: int = 100
    connection_sample_interval: int = 30  # seconds

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v is None:
            return v
        v = v.lower()
        if v not in ("json", "colored", "standard"):
            raise ValueError(f"Unsupported log format: {v}")
        return v

    @field_validator("max_slow_queries")
    @classmethod
    def validate_buffer_size(cls, v):
        if v < 1:
            raise ValueError("Slow query buffer must hold at least one sample")
        return v


class BackupSettings(BaseSettings):
    """Backup and retention settings."""

    model_config = _ENV_CONFIG

    backup_directory: str = "data/backups"
    backup_product: str = "coldcaller"
    backup_compression: bool = True
    backup_formats: str = "sql,json"
    backup_max_file_size: int = 100 * 1024 * 1024

    # Only the daily window is enforced by retention pruning.
    backup_retention_daily: int = 7
    backup_retention_weekly: int = 4
    backup_retention_monthly: int = 12

    def get_formats(self) -> List[str]:
        """Get the configured export formats."""
        return [fmt.strip().lower() for fmt in self.backup_formats.split(",") if fmt.strip()]


class Settings(BaseSettings):
    """Main application settings."""

    model_config = _ENV_CONFIG

    environment: Environment = Environment.DEVELOPMENT
    app_name: str = "Cold Caller Data Services"
    app_version: str = "1.0.0"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings.

    The environment is read once; later calls return the same instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def validate_configuration(settings: Optional[Settings] = None) -> List[str]:
    """
    Validate the configuration and return any errors.

    Returns:
        List of validation error messages
    """
    settings = settings or get_settings()
    errors = []

    if settings.is_production() and settings.database.db_dialect == "sqlite":
        errors.append("Production should not run on SQLite")

    unknown_formats = set(settings.backup.get_formats()) - {"sql", "json"}
    if unknown_formats:
        errors.append(f"Unsupported backup formats: {', '.join(sorted(unknown_formats))}")

    if settings.database.db_pool_min > settings.database.db_pool_max:
        errors.append("DB_POOL_MIN must not exceed DB_POOL_MAX")

    return errors


def get_config_summary(settings: Optional[Settings] = None) -> dict:
    """
    Get a summary of the configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    settings = settings or get_settings()
    return {
        "environment": settings.environment.value,
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "database": {
            "dialect": settings.database.db_dialect,
            "name": settings.database.get_database_name(),
            "host": settings.database.db_host if settings.database.db_dialect != "sqlite" else None,
            "pool_max": settings.database.db_pool_max,
            "ssl": settings.database.db_ssl,
        },
        "monitoring": {
            "log_level": settings.monitoring.log_level.value,
            "slow_query_threshold_ms": settings.monitoring.slow_query_threshold_ms,
        },
        "backup": {
            "directory": settings.backup.backup_directory,
            "compression": settings.backup.backup_compression,
            "formats": settings.backup.get_formats(),
            "retention_daily": settings.backup.backup_retention_daily,
        },
    }
