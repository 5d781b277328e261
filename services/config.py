"""
Global configuration for the ticketing service layer.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceConfig(BaseSettings):
    """Service-level settings, read from .env and MOBI_* environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MOBI_",
        extra="ignore",
    )

    # Store
    DATABASE_URL: Optional[str] = None
    DB_PATH: str = "data/mobitickets.db"

    # Redemption credentials
    CREDENTIAL_SECRET: str = "mobitickets-dev-credential-secret-change-in-prod"
    CREDENTIAL_ISSUER: str = "mobitickets"

    # Wallet login
    WALLET_SIGNATURE_MAX_AGE: int = 300
    WALLET_NONCE_TTL: int = 600

    SESSION_DAYS: int = 30
    MAX_PER_PURCHASE_DEFAULT: int = 10

    # Send queue
    NOTIFY_MAX_RETRY: int = 3
    NOTIFY_RETRY_BASE_SECONDS: int = 60
    NOTIFY_WORKER_INTERVAL: int = 60  # seconds; 0 disables the in-process worker

    # SMTP
    SMTP_HOST: str = "smtp-relay.brevo.com"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = "no-reply@mobitickets.com"
    SMTP_FROM_NAME: str = "MobiTickets"

    TURNSTILE_SECRET_KEY: Optional[str] = None

    # slowapi limit strings
    RATE_LIMIT_PURCHASE: str = "20/minute"
    RATE_LIMIT_LOGIN: str = "10/minute"
    RATE_LIMIT_VALIDATE: str = "120/minute"

    TIMEZONE: str = "Africa/Nairobi"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"
    WEB_BASE_URL: str = "http://127.0.0.1:8000"


# Shared settings instance
config = ServiceConfig()
