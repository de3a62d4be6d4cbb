"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Deployment environment (production, staging, test)
    environment: str = "production"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica for advisory reads
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Story Credits Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger for story generation"

    # Admin Authentication - comma-separated keys allowed to run privileged operations
    ADMIN_API_KEYS: str = ""

    @property
    def admin_api_keys(self) -> list[str]:
        """Get list of configured admin API keys."""
        keys: list[str] = []
        for key in self.ADMIN_API_KEYS.split(","):
            key = key.strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "story-credits-ledger"

    # Ledger Configuration
    initial_free_credits: int = 10  # Welcome grant for new users
    transaction_history_limit: int = 20

    # Retry Policy (transient store failures only)
    retry_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 5.0

    # Store-level re-runs of a unit of work after a write conflict
    store_conflict_retries: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        SQLite is only accepted for the test environment.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            if not (self.environment == "test" and self.database_url.startswith("sqlite")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if self.initial_free_credits < 0:
            errors.append("INITIAL_FREE_CREDITS cannot be negative")

        if self.retry_max_retries < 0:
            errors.append("RETRY_MAX_RETRIES cannot be negative")

        if self.retry_base_delay_seconds < 0 or self.retry_max_delay_seconds < 0:
            errors.append("Retry delays cannot be negative")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()
