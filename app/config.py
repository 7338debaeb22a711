from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Send API authentication (signed bearer tokens carrying company_id)
    JWT_VERIFICATION_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # Shared secret for the reminder trigger endpoints (cron / scheduler)
    CRON_SECRET: str = ""

    # Fernet key used to decrypt stored provider auth tokens
    CREDENTIALS_ENCRYPTION_KEY: str = ""

    # Queues
    AWS_REGION: str = "us-east-1"
    SEND_QUEUE_URL: str = ""
    REMINDER_QUEUE_URL: str = ""
    DLQ_URL: Optional[str] = None

    # Messaging policy
    RATE_LIMIT_PER_MINUTE: int = 60
    SESSION_WINDOW_HOURS: int = 24
    WHATSAPP_AUTO_UPGRADE: bool = True
    WHATSAPP_POLICY_ERROR_CODE: str = "63049"

    # Reminder scheduler
    REMINDER_SEND_DELAY_MS: int = 200
    MORNING_OF_HOURS_AHEAD: int = 2

    # Provider (Twilio REST)
    TWILIO_API_BASE: str = "https://api.twilio.com/2010-04-01"
    HTTP_TIMEOUT_SECONDS: float = 10.0
    TWILIO_WEBHOOK_AUTH_TOKEN: Optional[str] = None
    SKIP_TWILIO_SIGNATURE_VALIDATION: bool = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
