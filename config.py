import os
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application settings
    app_name: str = "Bank Transaction API"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = Field(default=4000, validation_alias="PORT")

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Database settings
    database_url: str = Field(
        default="sqlite+aiosqlite:///./bank.db",
        validation_alias="DATABASE_URL",
    )
    database_echo: bool = False
    sqlite_busy_timeout: float = 30.0  # seconds a writer waits on a locked SQLite file

    # Concurrency settings
    lock_timeout_seconds: float = 10.0  # bounded wait for an account hold

    # CORS settings
    allowed_origins: List[str] = ["http://localhost:3000"]  # dashboard dev server
    allowed_methods: List[str] = ["GET", "POST", "PUT", "DELETE"]
    allowed_headers: List[str] = ["Content-Type"]

    # Security settings
    rate_limit_enabled: bool = True
    transaction_rate_limit: str = "30/minute"

    # Business logic settings
    max_transaction_amount: Decimal = Decimal("1000000.00")

    # Feature flags
    seed_demo_data: bool = True


class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    transaction_rate_limit: str = "100/minute"  # More lenient for development


class ProductionSettings(Settings):
    environment: str = "production"
    debug: bool = False
    log_level: str = "INFO"
    seed_demo_data: bool = False


class TestingSettings(Settings):
    environment: str = "testing"
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    database_url: str = Field(
        default="sqlite+aiosqlite:///./test_bank.db",
        validation_alias="DATABASE_URL",
    )
    lock_timeout_seconds: float = 5.0
    rate_limit_enabled: bool = False
    seed_demo_data: bool = False


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance for the profile named by APP_ENV."""
    return get_settings_for_environment(os.environ.get("APP_ENV", "development"))
