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


def _split_csv(raw: str) -> list[str]:
    """Split a comma-separated setting into unique, trimmed, non-empty values."""
    values: list[str] = []
    for item in raw.split(","):
        item = item.strip()
        if item and item not in values:
            values.append(item)
    return values


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "RealWorth Entitlement Ledger"
    api_version: str = "0.1.0"
    api_description: str = "Subscription reconciliation and token ledger service"

    # Shared key for internal feature services calling the ledger surface
    service_api_key: str = ""

    # Operator allow-list - always entitled (comma-separated)
    operator_emails: str = ""
    operator_account_ids: str = ""

    @property
    def operator_email_list(self) -> list[str]:
        """Lower-cased operator emails."""
        return [email.lower() for email in _split_csv(self.operator_emails)]

    @property
    def operator_account_id_list(self) -> list[str]:
        """Operator account ids."""
        return _split_csv(self.operator_account_ids)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "entitlement-ledger"

    # Payment Processor - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_... (empty = every webhook fails closed)
    stripe_webhook_tolerance_seconds: int = 300

    # Period-end fallback
    default_period_days: int = 30

    # One-time purchases
    default_purchase_credits: int = 1
    pay_per_use_price_cents: int = 199  # $1.99 per appraisal credit

    # Hosted checkout redirects
    app_url: str = "https://realworth.ai"

    # Platform store - Apple App Store Server API
    apple_issuer_id: str = ""
    apple_key_id: str = ""
    apple_private_key: str = ""  # PEM or base64-encoded PEM
    apple_bundle_id: str = "ai.realworth.app"
    apple_environment: str = "production"  # production or sandbox

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
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.default_period_days <= 0:
            errors.append("DEFAULT_PERIOD_DAYS must be positive")

        if self.default_purchase_credits <= 0:
            errors.append("DEFAULT_PURCHASE_CREDITS must be positive")

        if self.pay_per_use_price_cents <= 0:
            errors.append("PAY_PER_USE_PRICE_CENTS must be positive")

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
    def apple_api_base_url(self) -> str:
        """App Store Server API base URL for the configured environment."""
        if self.apple_environment.lower() == "sandbox":
            return "https://api.storekit-sandbox.itunes.apple.com"
        return "https://api.storekit.itunes.apple.com"


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
