"""Configuration management for the homeflow transaction coordinator.

All configuration is loaded from environment variables and/or .env file.
External collaborators are disabled unless their base URL is set.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root detection
PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = PROJECT_ROOT / ".env"

DATABASE_FILE = PROJECT_ROOT / "homeflow.db"
ABSOLUTE_DATABASE_URL = f"sqlite:///{DATABASE_FILE.as_posix()}"


def _resolve_database_url(url: str) -> str:
    """
    Convert relative SQLite paths to absolute paths based on PROJECT_ROOT.

    In-memory and non-SQLite URLs are returned unchanged.
    """
    if not url.startswith("sqlite:///"):
        return url

    path_part = url.replace("sqlite:///", "")
    if path_part == ":memory:" or path_part == "":
        return url

    if path_part.startswith("./") or (not path_part.startswith("/") and ":" not in path_part):
        if path_part.startswith("./"):
            path_part = path_part[2:]
        absolute_path = PROJECT_ROOT / path_part
        return f"sqlite:///{absolute_path.as_posix()}"

    return url


class Settings(BaseSettings):
    """
    Runtime configuration powered by environment variables and .env overrides.

    All settings can be configured via:
    1. Environment variables (highest priority)
    2. .env file in project root (loaded automatically)
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default=ABSOLUTE_DATABASE_URL,
        alias="DATABASE_URL",
        description="SQLAlchemy connection string.",
    )
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE", ge=1)
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW", ge=0)
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT", ge=1)

    # -------------------------------------------------------------------------
    # Projection fan-out
    # -------------------------------------------------------------------------
    projection_retry_attempts: int = Field(
        default=3,
        alias="PROJECTION_RETRY_ATTEMPTS",
        ge=1,
        description="Attempts per transition before failed projection writes go to the outbox",
    )
    projection_retry_min_wait: float = Field(default=0.1, alias="PROJECTION_RETRY_MIN_WAIT", ge=0)
    projection_retry_max_wait: float = Field(default=2.0, alias="PROJECTION_RETRY_MAX_WAIT", ge=0)
    outbox_batch_size: int = Field(default=100, alias="OUTBOX_BATCH_SIZE", ge=1)

    # -------------------------------------------------------------------------
    # Messaging collaborator
    # -------------------------------------------------------------------------
    messaging_webhook_url: Optional[str] = Field(default=None, alias="MESSAGING_WEBHOOK_URL")
    messaging_timeout: int = Field(default=10, alias="MESSAGING_TIMEOUT", ge=1)
    app_base_url: str = Field(
        default="http://localhost:3000",
        alias="APP_BASE_URL",
        description="Base URL used to build action links in notifications",
    )

    # -------------------------------------------------------------------------
    # Storage collaborator
    # -------------------------------------------------------------------------
    storage_base_url: Optional[str] = Field(default=None, alias="STORAGE_BASE_URL")
    storage_api_key: Optional[str] = Field(default=None, alias="STORAGE_API_KEY")
    storage_timeout: int = Field(default=30, alias="STORAGE_TIMEOUT", ge=1)

    # -------------------------------------------------------------------------
    # Identity collaborator
    # -------------------------------------------------------------------------
    directory_base_url: Optional[str] = Field(default=None, alias="DIRECTORY_BASE_URL")
    directory_timeout: int = Field(default=10, alias="DIRECTORY_TIMEOUT", ge=1)
    directory_cache_ttl_seconds: int = Field(
        default=900, alias="DIRECTORY_CACHE_TTL_SECONDS", ge=0
    )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    dry_run: bool = Field(default=True, alias="DRY_RUN")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")  # "text" or "json"
    environment: str = Field(default="local", alias="ENVIRONMENT")
    api_port: int = Field(default=8000, alias="API_PORT", ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Ensure log format is valid."""
        lower = v.lower()
        if lower not in {"text", "json"}:
            raise ValueError("log_format must be 'text' or 'json'")
        return lower

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        """Max wait may not be shorter than min wait."""
        if self.projection_retry_max_wait < self.projection_retry_min_wait:
            raise ValueError(
                "PROJECTION_RETRY_MAX_WAIT must be >= PROJECTION_RETRY_MIN_WAIT"
            )
        return self

    @model_validator(mode="after")
    def validate_messaging_config(self) -> "Settings":
        """Live notification delivery in production needs a webhook."""
        if not self.dry_run and self.environment == "production":
            if not self.messaging_webhook_url:
                raise ValueError("MESSAGING_WEBHOOK_URL required in production mode")
        return self

    @model_validator(mode="after")
    def resolve_database_url(self) -> "Settings":
        """Convert relative SQLite paths to absolute paths."""
        self.database_url = _resolve_database_url(self.database_url)
        return self

    # -------------------------------------------------------------------------
    # Helper Methods for Feature Detection
    # -------------------------------------------------------------------------

    def is_messaging_enabled(self) -> bool:
        """Check if the messaging webhook is configured."""
        return bool(self.messaging_webhook_url)

    def is_storage_enabled(self) -> bool:
        """
        Check if the storage collaborator is configured.

        Returns True only if STORAGE_BASE_URL and STORAGE_API_KEY are both set.
        """
        return bool(self.storage_base_url and self.storage_api_key)

    def is_directory_enabled(self) -> bool:
        """Check if the participant directory is configured."""
        return bool(self.directory_base_url)

    def get_enabled_services(self) -> list[str]:
        """Get list of enabled external services."""
        services = []
        if self.is_messaging_enabled():
            services.append("messaging")
        if self.is_storage_enabled():
            services.append("storage")
        if self.is_directory_enabled():
            services.append("directory")
        return services


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once and cached. To reload settings,
    call `get_settings.cache_clear()` first.

    Returns:
        Settings object with all configuration.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Clear settings cache and reload from environment.

    Useful for testing or after modifying .env file.
    """
    get_settings.cache_clear()
    return get_settings()
