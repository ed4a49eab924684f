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

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "One-Shot Unlock API"
    api_version: str = "0.1.0"
    api_description: str = "Product unlock credits and weighted testing demand"

    # Security
    admin_api_key: str = ""  # Shared secret for operator endpoints (X-Admin-Key)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "oneshot-api"

    # Unlock Policy
    free_unlocks_per_device: int = 1
    suspicious_email_threshold: int = 2  # More distinct emails than this flags the device

    # Signal Weights
    weight_search: float = 1.0
    weight_possession: float = 5.0
    weight_verified_possession: float = 20.0
    weight_photo_bounty: float = 10.0

    # Funding
    default_funding_threshold: float = 1000.0

    # Velocity Tracking
    velocity_short_window_hours: int = 24
    velocity_long_window_days: int = 7
    max_scan_timestamps: int = 500
    urgent_scans_24h: int = 100
    urgent_scans_7d: int = 500
    trending_scans_24h: int = 20
    trending_scans_7d: int = 100

    # Ranking
    queue_page_size: int = 50
    leaderboard_max_limit: int = 50
    browse_max_limit: int = 50
    investigations_max: int = 100
    investigation_queue_depth: int = 500

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.free_unlocks_per_device < 0:
            errors.append("FREE_UNLOCKS_PER_DEVICE cannot be negative")

        if self.default_funding_threshold <= 0:
            errors.append("DEFAULT_FUNDING_THRESHOLD must be positive")

        if self.max_scan_timestamps <= 0:
            errors.append("MAX_SCAN_TIMESTAMPS must be positive")

        # If we have errors, fail immediately with clear messaging
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


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
