"""Environment-based configuration for FaceCrop."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACECROP_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACECROP_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    worker_count: int = Field(default=2, ge=1)
    job_timeout: float = Field(default=30.0, gt=0)

    # Batch failure handling
    max_retries: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    continue_on_error: bool = True
    reduced_resolution: bool = False
    fallback_to_local: bool = True

    # Memory
    memory_policy: Literal["manual", "auto", "aggressive"] = "auto"
    memory_release_age: float = Field(default=300.0, ge=0)
    history_limit: int = Field(default=50, ge=1)

    # Input limits
    quality_max_edge: int = Field(default=1024, ge=16)
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
