"""
API Configuration Settings

Centralized configuration for the FastAPI application.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True, extra="ignore"
    )

    # API Settings
    api_title: str = "Session Funnel Metrics API"
    api_version: str = "1.0.0"
    api_description: str = "Order funnel metrics over sessionized customer events"

    # Server Settings
    host: str = Field("0.0.0.0", validation_alias="API_HOST")
    port: int = Field(8000, validation_alias="API_PORT")
    reload: bool = Field(False, validation_alias="API_RELOAD")

    # Warehouse Settings
    warehouse_path: Path = Field(Path("data/warehouse.duckdb"), validation_alias="WAREHOUSE_PATH")
    stage_dir: Path = Field(Path("data/stage"), validation_alias="STAGE_DIR")
    load_stage_on_startup: bool = Field(True, validation_alias="LOAD_STAGE_ON_STARTUP")
    stage_poll_seconds: float = Field(5.0, validation_alias="STAGE_POLL_SECONDS")
    stage_max_attempts: Optional[int] = Field(60, validation_alias="STAGE_MAX_ATTEMPTS")

    # Re-sessionization Settings
    default_session_length: int = Field(30, validation_alias="SESSION_LENGTH")

    # CORS Settings
    cors_origins: list = Field(["*"], validation_alias="CORS_ORIGINS")
    cors_credentials: bool = Field(True, validation_alias="CORS_CREDENTIALS")

    # Logging Settings
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")


# Global settings instance
settings = Settings()
