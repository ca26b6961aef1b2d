"""Application settings powered by Pydantic BaseSettings."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, env_file=".env", env_file_encoding="utf-8"
    )

    env: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="DATASOURCES_ENV"
    )
    log_level: str = Field(default="INFO", validation_alias="DATASOURCES_LOG_LEVEL")
    log_json: bool = Field(default=True, validation_alias="DATASOURCES_LOG_JSON")
    base_url: str | None = Field(default=None, validation_alias="DATASOURCES_BASE_URL")


def get_settings() -> AppSettings:
    """Read settings from the environment and `.env`."""
    return AppSettings()
