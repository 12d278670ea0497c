import logging
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/rehabflow"
    DATABASE_URL_SYNC: str = "postgresql+psycopg2://postgres:postgres@db:5432/rehabflow"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Shared secret for the cron trigger endpoints
    CRON_SECRET: str = Field(..., min_length=1)

    # SMS delivery
    ENABLE_REAL_SMS: bool = False
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_MESSAGING_SERVICE_SID: str = ""
    TWILIO_VALIDATE_WEBHOOKS: bool = False

    # Outbound send pacing (token bucket)
    SMS_SEND_RATE_PER_SECOND: float = Field(10.0, gt=0)
    SMS_SEND_BURST: int = Field(1, ge=1)

    # Database connection pool
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("LOG_LEVEL")
    @classmethod
    def _valid_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("CRON_SECRET")
    @classmethod
    def _non_blank_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("CRON_SECRET must not be blank")
        return value

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.TWILIO_ACCOUNT_SID
            and self.TWILIO_AUTH_TOKEN
            and self.TWILIO_MESSAGING_SERVICE_SID
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    # Real sends without credentials would fail every message at dispatch time
    if settings.APP_ENV == "production" and settings.ENABLE_REAL_SMS and not settings.twilio_configured:
        raise RuntimeError(
            "FATAL: ENABLE_REAL_SMS is on but TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN "
            "or TWILIO_MESSAGING_SERVICE_SID is missing."
        )

    if not settings.ENABLE_REAL_SMS:
        logger.warning("ENABLE_REAL_SMS is off: outbound SMS will be mocked and logged only.")

    if settings.APP_ENV == "production" and not settings.TWILIO_VALIDATE_WEBHOOKS:
        logger.warning(
            "TWILIO_VALIDATE_WEBHOOKS is off: inbound Twilio webhooks are not signature-checked."
        )

    return settings


def clear_settings_cache() -> None:
    """Clear the cached Settings so the next call to ``get_settings()``
    re-reads environment variables.
    """
    get_settings.cache_clear()
