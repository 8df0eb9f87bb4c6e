# clinicbook/config.py - Environment driven configuration
from dotenv import load_dotenv

load_dotenv()
from typing import Optional
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "ClinicBook Appointment Service"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    transaction_lock_timeout_ms: int = Field(default=5000, alias="TRANSACTION_LOCK_TIMEOUT_MS")
    transaction_timeout_ms: int = Field(default=10000, alias="TRANSACTION_TIMEOUT_MS")

    # Security
    secret_key: str = Field(..., alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")

    # Locale
    default_country_code: str = Field(default="255", alias="DEFAULT_COUNTRY_CODE")
    default_language: str = Field(default="sw", alias="DEFAULT_LANGUAGE")

    # Booking
    slot_buffer_minutes: int = Field(default=15, alias="SLOT_BUFFER_MINUTES")
    slot_duration_minutes: int = Field(default=30, alias="SLOT_DURATION_MINUTES")
    booking_rate_limit: str = Field(default="5/minute", alias="BOOKING_RATE_LIMIT")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")

    # Reminders
    reminder_24h_window_start_hours: float = Field(default=23, alias="REMINDER_24H_WINDOW_START_HOURS")
    reminder_24h_window_end_hours: float = Field(default=25, alias="REMINDER_24H_WINDOW_END_HOURS")
    reminder_same_day_window_start_hours: float = Field(default=2, alias="REMINDER_SAME_DAY_WINDOW_START_HOURS")
    reminder_same_day_window_end_hours: float = Field(default=4, alias="REMINDER_SAME_DAY_WINDOW_END_HOURS")
    reminder_batch_limit: int = Field(default=100, alias="REMINDER_BATCH_LIMIT")
    reminder_max_retries: int = Field(default=1, alias="REMINDER_MAX_RETRIES")
    reminder_retry_delay_seconds: float = Field(default=1.0, alias="REMINDER_RETRY_DELAY_SECONDS")
    reminder_send_delay_seconds: float = Field(default=0.2, alias="REMINDER_SEND_DELAY_SECONDS")
    reminder_run_budget_seconds: float = Field(default=60.0, alias="REMINDER_RUN_BUDGET_SECONDS")

    # Waitlist
    waitlist_candidate_limit: int = Field(default=10, alias="WAITLIST_CANDIDATE_LIMIT")
    waitlist_date_tolerance_days: int = Field(default=1, alias="WAITLIST_DATE_TOLERANCE_DAYS")

    # Twilio (SMS + WhatsApp)
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_sms_from: Optional[str] = Field(default=None, alias="TWILIO_SMS_FROM")
    twilio_whatsapp_from: Optional[str] = Field(default=None, alias="TWILIO_WHATSAPP_FROM")
    twilio_status_callback_url: Optional[str] = Field(default=None, alias="TWILIO_STATUS_CALLBACK_URL")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("default_language")
    @classmethod
    def validate_language(cls, v):
        if v not in ("sw", "en"):
            raise ValueError("DEFAULT_LANGUAGE must be 'sw' or 'en'")
        return v

    @model_validator(mode="after")
    def validate_windows(self):
        if self.reminder_24h_window_start_hours >= self.reminder_24h_window_end_hours:
            raise ValueError("24h reminder window start must be before its end")
        if self.reminder_same_day_window_start_hours >= self.reminder_same_day_window_end_hours:
            raise ValueError("same-day reminder window start must be before its end")
        if self.reminder_max_retries < 0:
            raise ValueError("REMINDER_MAX_RETRIES cannot be negative")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    @property
    def sms_enabled(self) -> bool:
        return self.twilio_enabled and bool(self.twilio_sms_from)

    @property
    def whatsapp_enabled(self) -> bool:
        return self.twilio_enabled and bool(self.twilio_whatsapp_from)


# Environment-specific configurations
class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = Field(default=True, alias="DEBUG")


class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = Field(default=False, alias="DEBUG")
    log_json: bool = Field(default=True, alias="LOG_JSON")


class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = Field(default=True, alias="DEBUG")
    rate_limit_enabled: bool = Field(default=False, alias="RATE_LIMIT_ENABLED")
    reminder_retry_delay_seconds: float = Field(default=0.0, alias="REMINDER_RETRY_DELAY_SECONDS")
    reminder_send_delay_seconds: float = Field(default=0.0, alias="REMINDER_SEND_DELAY_SECONDS")


CONFIGS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    config_class = CONFIGS.get(env.lower(), Settings)
    return config_class(ENVIRONMENT=env.lower())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings for the environment named by ENVIRONMENT"""
    return get_config_by_env(Settings().environment)

# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
