"""
Application Configuration - Pydantic Settings for type-safe config.

Static settings only. Gateway credentials are operator-editable and live in the
payment_config table (see services/payment_config.py); they are read per request.
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
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "QC Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Credit top-up, redemption and metered AI analysis"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "qc-billing-api"

    # Payment Gateway - Alipay (credentials come from payment_config table)
    alipay_gateway_url: str = "https://openapi.alipay.com/gateway.do"
    alipay_method: str = "alipay.trade.wap.pay"
    alipay_product_code: str = "QUICK_WAP_WAY"
    alipay_timezone: str = "Asia/Shanghai"  # Gateway requires Beijing time
    # Process notifications whose signature fails verification. Security-sensitive:
    # anyone who can reach the notify endpoint could forge a payment. Audit before enabling.
    alipay_allow_unverified_notify: bool = False
    order_id_prefix: str = "QC"
    order_subject_template: str = "QC credits top-up: {credits} analyses"

    # Credit channels
    redemption_credits: int = 5
    redemption_timezone: str = "Asia/Shanghai"
    signup_bonus_credits: int = 5
    referral_bonus_credits: int = 1
    referral_code_length: int = 6

    # AI Provider - Gemini
    gemini_api_key: str = ""
    gemini_image_model: str = "gemini-2.5-flash-image"
    gemini_analysis_model: str = "gemini-2.5-flash"
    gemini_validation_model: str = "gemini-2.0-flash"
    ai_max_attempts: int = 3
    ai_retry_base_delay_seconds: float = 2.0

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
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.ai_max_attempts < 1:
            errors.append(f"AI_MAX_ATTEMPTS must be at least 1, got: {self.ai_max_attempts}")

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

    @property
    def is_sqlite(self) -> bool:
        """SQLite engines take no pool sizing arguments."""
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
