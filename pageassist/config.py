"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.

Business components never read these values as ambient state: the Settings
instance is handed to them through their constructors.
"""

import sys
from decimal import Decimal

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
    auto_migrate: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_title: str = "PageAssist API"
    api_version: str = "0.1.0"
    api_description: str = "Metered LLM assistant for marketplace analytics pages"
    debug: bool = False

    # Session tokens (first-party web / admin surface)
    jwt_secret: str = ""
    jwt_expire_days: int = 7

    # Telegram Mini-App login
    telegram_bot_token: str = ""
    telegram_verify_init_data: bool = False
    telegram_init_data_max_age_seconds: int = 86400

    # Wallet
    welcome_bonus: Decimal = Decimal("1.00")
    currency: str = "USD"

    # Pricing - vendor cost per 1M tokens, marked up by price_multiplier
    price_input_per_million: Decimal = Decimal("15")
    price_output_per_million: Decimal = Decimal("75")
    price_multiplier: Decimal = Decimal("3")

    # LLM Gateway
    llm_api_url: str = "https://api.anthropic.com/v1/messages"
    llm_api_key: str = ""
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = 2048
    llm_timeout_seconds: float = 60.0
    llm_api_version: str = "2023-06-01"

    # Chat workflow
    chat_history_limit: int = 20
    prompt_max_table_rows: int = 20
    prompt_max_metrics: int = 50
    idempotency_window_hours: int = 24

    # Origin domains
    seller_console_host: str = "seller.ozon.ru"
    public_site_host: str = "ozon.ru"

    # Rate limiting (ingress)
    rate_limit_per_minute: int = 30
    rate_limit_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "pageassist-api"

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

        if len(self.jwt_secret) < 32:
            errors.append("JWT_SECRET is required and must be at least 32 characters")

        if self.price_multiplier <= 0:
            errors.append("PRICE_MULTIPLIER must be positive")

        if self.chat_history_limit < 0:
            errors.append("CHAT_HISTORY_LIMIT cannot be negative")

        if self.telegram_verify_init_data and not self.telegram_bot_token:
            errors.append("TELEGRAM_BOT_TOKEN is required when init data verification is on")

        if self.telegram_init_data_max_age_seconds <= 0:
            errors.append("TELEGRAM_INIT_DATA_MAX_AGE_SECONDS must be positive")

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
