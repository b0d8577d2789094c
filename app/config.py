"""
Application settings.

Values come from environment variables (or a local .env file) and fall back
to development defaults.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = Field(default="Subscription Service", alias="APP_NAME")
    database_url: str = Field(default="sqlite:///./subscriptions.db", alias="DATABASE_URL")
    db_echo: bool = Field(default=False, alias="DB_ECHO")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # every payment is opened in this currency, conversion is not supported
    settlement_currency: str = Field(default="USD", alias="SETTLEMENT_CURRENCY")
    seed_catalog: bool = Field(default=True, alias="SEED_CATALOG")


@lru_cache
def get_settings() -> Settings:
    return Settings()
