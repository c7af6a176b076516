"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_enabled: bool = Field(default=False, description="Offer Stripe checkout")
    stripe_secret_key: str = Field(default="", description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    stripe_webhook_tolerance: int = Field(
        default=300, description="Max age of a signed Stripe webhook (seconds)"
    )

    # PayPal Configuration
    paypal_enabled: bool = Field(default=False, description="Offer PayPal checkout")
    paypal_client_id: str = Field(default="", description="PayPal REST client id")
    paypal_client_secret: str = Field(default="", description="PayPal REST client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook id for verification")
    paypal_mode: str = Field(default="sandbox", description="PayPal mode (sandbox/live)")
    paypal_timeout: float = Field(default=15.0, description="PayPal HTTP timeout (seconds)")

    # Slack Configuration
    slack_bot_token: str = Field(default="", description="Slack bot token (xoxb-...)")
    slack_app_token: str = Field(default="", description="Slack app-level token for Socket Mode")
    slack_signing_secret: str = Field(default="", description="Slack signing secret")
    admin_user_ids: str = Field(
        default="", description="Chat user ids allowed to issue invoices (comma-separated)"
    )
    chat_command_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for handling one chat command"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/invoices.db",
        description="Database connection URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_pool_timeout: float = Field(
        default=30.0, description="Seconds to wait for a pooled connection"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    store_retry_attempts: int = Field(
        default=3, description="Attempts for a transaction when the store is unavailable"
    )
    store_retry_base_delay: float = Field(
        default=0.5, description="Base delay for store retry backoff (seconds)"
    )

    # Invoice Configuration
    invoice_default_currency: str = Field(default="USD", description="Currency when none is given")
    invoice_pending_timeout_seconds: int = Field(
        default=86400, description="Pending invoices older than this expire"
    )
    expiry_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval between expiry sweeps"
    )
    public_base_url: str = Field(
        default="http://localhost:8000", description="Public URL used for checkout redirects"
    )

    # QR Codes
    qr_code_size: int = Field(default=300, description="Rendered QR code size in pixels")
    qr_max_uri_length: int = Field(default=2000, description="Longest URI accepted for a QR code")

    # Application Configuration
    app_name: str = Field(default="kyver-invoices", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8080, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate Stripe secret key format when one is configured."""
        if v and not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("paypal_mode")
    @classmethod
    def validate_paypal_mode(cls, v: str) -> str:
        """Validate PayPal mode."""
        if v.lower() not in ("sandbox", "live"):
            raise ValueError("Invalid PayPal mode. Must be 'sandbox' or 'live'")
        return v.lower()

    @field_validator("invoice_default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate default currency code."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Default currency must be a 3-letter code")
        return v.upper()

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
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    def get_admin_user_ids(self) -> List[str]:
        """Parse admin user ids from comma-separated string."""
        return [uid.strip() for uid in self.admin_user_ids.split(",") if uid.strip()]

    @property
    def paypal_base_url(self) -> str:
        """PayPal REST API base URL for the configured mode."""
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def chat_enabled(self) -> bool:
        """Check if Slack credentials are configured."""
        return bool(self.slack_bot_token and self.slack_app_token)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
