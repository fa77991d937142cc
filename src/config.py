"""
Configuration management for the platform billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)

Trial-mode switches are deliberately absent here: they are platform settings
persisted in the database and re-read on every call (see TrialSettings).
"""

import logging
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PriceOverride(BaseModel):
    """Product/price pair overriding the platform default for one team type."""

    product: str = Field(..., min_length=1)
    price: str = Field(..., min_length=1)


class StripeConfig(BaseSettings):
    """Stripe billing configuration (platform default products and prices)."""

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Stripe secret key (sk_live_/sk_test_)")
    webhook_secret: str = Field(default="", description="Webhook signing secret (whsec_)")

    # Member seats
    team_product: str | None = Field(default=None)
    team_price: str | None = Field(default=None)

    # Devices beyond the team type's free allocation
    device_product: str | None = Field(default=None)
    device_price: str | None = Field(default=None)

    # Billed projects
    project_product: str | None = Field(default=None)
    project_price: str | None = Field(default=None)

    # Credit granted to first-time customers; enables the free_trial session flag
    new_customer_free_credit: int | None = Field(default=None, ge=0)

    # Per team-type member seat overrides, keyed by team type name
    # e.g. STRIPE_TEAMS='{"starter": {"product": "prod_x", "price": "price_x"}}'
    teams: dict[str, PriceOverride] = Field(default_factory=dict)

    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Upper bound on every Stripe API call",
    )

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """Reject obvious placeholders so billing stays disabled instead of failing later."""
        if not v:
            return ""
        if any(pattern in v.lower() for pattern in ("your-key-here", "example", "dummy")):
            logging.warning("STRIPE_API_KEY appears to be a placeholder - billing disabled")
            return ""
        return v

    @property
    def is_configured(self) -> bool:
        """Check if Stripe is properly configured."""
        return bool(self.api_key)


class DatabaseConfig(BaseSettings):
    """Platform database configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = Field(default="./data/platform.db")


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    # Front-end origin used to build checkout return URLs
    base_url: str = Field(default="http://localhost:3000")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(default="platform-billing")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the platform billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Set ADMIN_API_KEY in environment to enable admin endpoints
    admin_api_key: str | None = Field(
        default=None,
        description="API key for admin endpoints (required for admin access)",
    )

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """
        Security: Validate admin API key format and prevent common mistakes.

        Never expose API keys in logs or errors.
        """
        if not v:
            return None

        placeholder_patterns = ["your-api-key-here", "admin", "example", "dummy"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning(
                "admin_api_key seems too short to be secure - use at least 32 characters"
            )

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.is_configured:
            logging.warning("Stripe API key not configured - billing will be disabled")
            return

        if not (self.stripe.team_product and self.stripe.team_price):
            logging.warning(
                "No default team product/price configured - "
                "teams without an override cannot be billed"
            )

        if bool(self.stripe.device_product) != bool(self.stripe.device_price):
            logging.warning("device_product and device_price must be configured together")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
