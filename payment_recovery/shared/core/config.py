from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for the payment recovery service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "Payment Recovery"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None
    OTEL_EXPORTER_OTLP_INSECURE: bool = False

    @model_validator(mode='after')
    def validate_production_config(self) -> 'Settings':
        """Fail-closed: refuse to start production with an insecure or incomplete setup."""
        if self.GATEWAY_TIMEOUT_SECONDS <= 0:
            raise ValueError("GATEWAY_TIMEOUT_SECONDS must be positive.")
        if not 1 <= self.DUNNING_TOTAL_STEPS <= 4:
            raise ValueError("DUNNING_TOTAL_STEPS must be between 1 and 4.")

        if self.TESTING:
            return self

        if self.ENVIRONMENT in ["production", "staging"]:
            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' "
                    f"in {self.ENVIRONMENT}. Current: {self.DB_SSL_MODE}"
                )
            if not self.PAYSTACK_SECRET_KEY:
                raise ValueError(f"PAYSTACK_SECRET_KEY must be configured in {self.ENVIRONMENT}.")

        return self

    # Database
    DATABASE_URL: str # Required
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_COMMAND_TIMEOUT_SECONDS: float = 10.0

    # Payment gateway (Paystack)
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Recovery policy
    GRACE_PERIOD_DAYS: int = 14
    DUNNING_TOTAL_STEPS: int = 4

    # Timer service
    TIMER_POLL_INTERVAL_SECONDS: int = 30
    TIMER_BATCH_SIZE: int = 20
    TIMER_MAX_ATTEMPTS: int = 5
    TIMER_HANDLER_TIMEOUT_SECONDS: int = 60
    TIMER_BACKOFF_BASE_SECONDS: int = 60
    TIMER_STUCK_AFTER_MINUTES: int = 30
    EXPIRY_SWEEP_MINUTE: int = 5  # Hourly, at this minute

    # Notifications
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    SLACK_BOT_TOKEN: Optional[str] = None
    SLACK_CHANNEL_ID: Optional[str] = None

    # SMTP Email (dunning communications)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "billing@example.com"

    # SMS provider (HTTP API)
    SMS_API_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    SMS_SENDER_ID: str = "BILLING"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def uses_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Returns a singleton instance of the application settings."""
    return Settings()
