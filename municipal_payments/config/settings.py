"""Environment-driven settings for the API process and the expiration worker."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FALLBACK_CURRENCIES = ("USD", "EUR", "GBP")


class Settings(BaseSettings):
    """Read from the environment (or ``.env``); names are case-insensitive."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ledger store
    database_url: str = Field(
        ..., description="SQLAlchemy async URL, e.g. postgresql+asyncpg://user:pw@host/db"
    )
    database_pool_size: int = Field(default=20, ge=1)
    database_max_overflow: int = Field(default=50, ge=0)
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Service
    app_name: str = "municipal-payments"
    app_env: str = Field(default="development", description="Deployment environment label")
    log_level: str = "INFO"
    debug: bool = Field(default=False, description="Console logs and autoreload")

    # HTTP
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = Field(default=4, ge=1)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS origins",
    )

    # Payments and redemption codes
    default_currency: str = Field(
        default="USD", description="Used when neither the request nor the municipality names one"
    )
    qr_default_expiration_minutes: int = Field(
        default=60, ge=1, le=1440, description="Code lifetime for unconfigured municipalities"
    )
    qr_default_image_size: int = Field(default=256, ge=64, le=1024)
    qr_code_max_attempts: int = Field(
        default=10, ge=1, description="Draws allowed before giving up on a unique code"
    )

    # Expiration sweep
    payment_staleness_hours: int = Field(
        default=24, ge=1, description="Pending payments older than this are expired"
    )
    expiration_sweep_interval_seconds: int = Field(default=300, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, v: str) -> str:
        currency = v.upper()
        if currency not in FALLBACK_CURRENCIES:
            raise ValueError(f"default_currency must be one of {', '.join(FALLBACK_CURRENCIES)}")
        return currency

    def get_allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_sqlite(self) -> bool:
        """True for the SQLite store used in local runs and tests."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
