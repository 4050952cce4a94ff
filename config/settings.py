"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Finix Configuration
    finix_base_url: str = Field(
        default="https://finix.sandbox-payments-api.com",
        description="Finix API base URL",
    )
    finix_username: str = Field(..., description="Finix API username (US...)")
    finix_password: str = Field(..., description="Finix API password")
    finix_api_version: str = Field(default="2022-02-01", description="Finix-Version header")
    finix_application_id_us: str = Field(..., description="Finix application for USD payments")
    finix_application_id_ca: str = Field(
        default="", description="Finix application for CAD payments (falls back to US app)"
    )
    finix_webhook_secret: str = Field(default="", description="Finix webhook HMAC secret")
    finix_webhook_username: str = Field(default="", description="Legacy webhook Basic auth user")
    finix_webhook_password: str = Field(default="", description="Legacy webhook Basic auth password")
    finix_timeout_seconds: float = Field(default=30.0, description="Finix request timeout")
    finix_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transient Finix failures"
    )
    finix_retry_base_delay_seconds: float = Field(
        default=1.0, description="Base delay for Finix retry backoff (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    webhook_queue_key: str = Field(default="finix:webhooks:ready", description="Ready list key")
    webhook_delayed_key: str = Field(
        default="finix:webhooks:delayed", description="Delayed retry sorted set key"
    )
    outbox_stream_key: str = Field(default="marketplace:outbox", description="Outbox stream key")

    # Application Configuration
    app_name: str = Field(default="marketplace-escrow", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Order Lifecycle
    reservation_hold_minutes: int = Field(
        default=120, description="How long a reservation holds a listing"
    )

    # Webhook Processing
    webhook_max_attempts: int = Field(default=10, description="Max webhook processing attempts")
    webhook_retry_base_delay_seconds: float = Field(
        default=2.0, description="Base delay for webhook retry backoff (seconds)"
    )
    webhook_stale_pending_seconds: int = Field(
        default=60, description="Pending events older than this are re-enqueued"
    )
    webhook_processing_lease_seconds: int = Field(
        default=300,
        description="A processing claim older than this is treated as abandoned",
    )

    # Transfer Reconciliation
    transfer_sweep_interval_seconds: int = Field(
        default=300, description="Seconds between transfer reconciliation passes"
    )
    transfer_sweep_min_age_seconds: int = Field(
        default=600, description="Only orders untouched for this long are polled"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("finix_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalise the Finix base URL."""
        return v.rstrip("/")

    @field_validator("finix_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Processor latency is high; refuse short timeouts."""
        if v < 30:
            raise ValueError("finix_timeout_seconds must be at least 30 seconds")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def application_id_for(self, currency: str) -> str:
        """Pick the Finix application that settles the given currency."""
        if currency.upper() == "CAD" and self.finix_application_id_ca:
            return self.finix_application_id_ca
        return self.finix_application_id_us

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def webhook_basic_auth_enabled(self) -> bool:
        """Legacy Basic auth is enforced only when both credentials are set."""
        return bool(self.finix_webhook_username and self.finix_webhook_password)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
