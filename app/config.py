"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="BackLogus", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3001, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./backlogus.db", alias="DATABASE_URL"
    )

    image_cache_dir: Path = Field(
        default=Path("./cache/images"), alias="IMAGE_CACHE_DIR"
    )
    image_download_timeout_seconds: float = Field(
        default=15.0, alias="IMAGE_DOWNLOAD_TIMEOUT", gt=0, le=120
    )
    image_download_retries: int = Field(
        default=2, alias="IMAGE_DOWNLOAD_RETRIES", ge=0, le=10
    )
    image_download_concurrency: int = Field(
        default=3, alias="IMAGE_DOWNLOAD_CONCURRENCY", ge=1, le=32
    )

    backup_max_upload_mb: int = Field(
        default=500, alias="BACKUP_MAX_UPLOAD_MB", ge=1, le=4_096
    )
    backup_spool_max_mb: int = Field(
        default=32, alias="BACKUP_SPOOL_MAX_MB", ge=1, le=1_024
    )
    backup_transaction_timeout_seconds: float = Field(
        default=60.0, alias="BACKUP_TRANSACTION_TIMEOUT", ge=5
    )
    backup_transaction_item_budget_seconds: float = Field(
        default=0.05, alias="BACKUP_TRANSACTION_ITEM_BUDGET", ge=0, le=10
    )
    backup_image_restore_timeout_seconds: float = Field(
        default=30.0, alias="BACKUP_IMAGE_RESTORE_TIMEOUT", gt=0
    )
    backup_scope_images_to_library: bool = Field(
        default=False, alias="BACKUP_SCOPE_IMAGES_TO_LIBRARY"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("app_name", mode="before")
    @classmethod
    def _strip_app_name(cls, value: object) -> object:
        """Fall back to the product name when APP_NAME is blank."""

        if isinstance(value, str):
            value = value.strip()
            if not value:
                return "BackLogus"
        return value

    @property
    def backup_max_upload_bytes(self) -> int:
        return self.backup_max_upload_mb * 1024 * 1024

    @property
    def backup_spool_max_bytes(self) -> int:
        return self.backup_spool_max_mb * 1024 * 1024

    def transaction_timeout_for(self, item_count: int) -> float:
        """Return the import transaction budget for ``item_count`` rows."""

        return self.backup_transaction_timeout_seconds + (
            max(item_count, 0) * self.backup_transaction_item_budget_seconds
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
