"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Loaded once per process and frozen afterwards. Components receive the
    instance explicitly instead of re-reading the environment mid-request.
    """

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    currency: str = Field(default="usd", description="Settlement currency for all tenants")

    # Database Configuration
    database_url: str = Field(..., description="Database URL (postgresql+asyncpg or sqlite+aiosqlite)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_lock_timeout_seconds: float = Field(
        default=30.0, description="Max time a transaction waits for a row lock"
    )
    sqlite_partition_dir: Optional[Path] = Field(
        default=None,
        description="Directory holding one attached database file per tenant (SQLite only)",
    )

    # Outbound webhooks
    webhook_timeout_seconds: float = Field(default=10.0, description="Webhook POST timeout")
    webhook_workers: int = Field(default=4, description="Concurrent webhook delivery workers")
    webhook_queue_size: int = Field(default=1000, description="Pending notification capacity")
    webhook_user_agent: str = Field(
        default="FleetRental-Webhook/1.0", description="User-Agent for webhook deliveries"
    )

    # Application Configuration
    app_name: str = Field(default="fleet-rental", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live secret key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Stripe expects lowercase ISO currency codes."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
