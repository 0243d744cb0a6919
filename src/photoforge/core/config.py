"""Configuration management for Photoforge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PHOTOFORGE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PHOTOFORGE_* prefix)
2. .env file in the project root
3. Default values defined in PhotoforgeConfig

Example .env file:
    PHOTOFORGE_GEMINI_API_KEY=...
    PHOTOFORGE_FREE_TIER_DAILY_LIMIT=5
    PHOTOFORGE_PAID_TIER_DAILY_LIMIT=50
    PHOTOFORGE_PROVIDER_TIMEOUT_SECONDS=60

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Application code that needs different settings (tests, scripts) builds its own
``PhotoforgeConfig`` and passes it to the services explicitly; nothing below
the API layer reads the global instance.

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: SQLite database and the preset catalogue (presets.json)
- uploads_dir: Normalised input images
- outputs_dir: Generated and placeholder images
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PhotoforgeConfig(BaseSettings):
    """Main configuration for Photoforge.

    Attributes
    ----------
    Quota Settings:
        free_tier_daily_limit : int
            Generations per day for ``free`` users
        paid_tier_daily_limit : int
            Generations per day for ``paid`` users
        quota_warning_threshold : float
            Fraction of the limit at which quota status becomes ``warning``

    Provider Settings:
        provider_name : str
            Registered provider to use (``Gemini``)
        gemini_api_key : str | None
            API key; when unset the provider is considered unavailable
        gemini_model : str
            Gemini image model identifier
        provider_timeout_seconds : float
            Upper bound for a single provider call

    Upload Settings:
        max_upload_bytes : int
            Largest accepted upload
        min_image_dimension / max_image_dimension : int
            Accepted input side lengths (larger images are shrunk)

    Paths:
        data_dir, uploads_dir, outputs_dir : Path

    Access:
        admin_user_ids : list[str]
            Callers allowed to change other users' tier or status and to
            reload the preset catalogue

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PHOTOFORGE_",
        case_sensitive=False,
    )

    # Quota settings
    free_tier_daily_limit: int = Field(
        default=5,
        description="Daily generation limit for free-tier users",
        ge=1,
    )
    paid_tier_daily_limit: int = Field(
        default=50,
        description="Daily generation limit for paid-tier users",
        ge=1,
    )
    quota_warning_threshold: float = Field(
        default=0.8,
        description="Usage fraction at which quota status turns to 'warning'",
        gt=0.0,
        le=1.0,
    )
    quota_retention_days: int = Field(
        default=30,
        description="Days of quota history kept before rows are purged",
        ge=1,
    )

    # Provider settings
    provider_name: str = Field(
        default="Gemini",
        description="Image provider registered in the provider registry",
    )
    gemini_api_key: str | None = Field(
        default=None,
        description="Google Gemini API key (provider unavailable when unset)",
    )
    gemini_model: str = Field(
        default="gemini-2.5-flash-image-preview",
        description="Gemini model used for image-to-image generation",
    )
    provider_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout for a single provider call",
        gt=0.0,
        le=600.0,
    )

    # Prompt settings
    max_prompt_length: int = Field(default=1000, ge=1)
    stored_prompt_max_length: int = Field(default=2000, ge=1)

    # Upload settings
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    min_image_dimension: int = Field(default=100, ge=1)
    max_image_dimension: int = Field(default=4096, ge=256)
    jpeg_quality: int = Field(default=85, ge=1, le=95)

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for the SQLite database and presets.json",
    )
    uploads_dir: Path = Field(
        default=Path("uploads"),
        description="Directory for normalised uploaded images",
    )
    outputs_dir: Path = Field(
        default=Path("outputs"),
        description="Directory for generated and placeholder images",
    )
    database_name: str = Field(default="photoforge.db")
    presets_file: str = Field(default="presets.json")

    # Public URL prefix used when building image references. Empty means
    # site-relative URLs such as ``/uploads/<file>``.
    public_base_url: str = Field(default="")

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=8000,
        description="Server port",
        ge=1024,
        le=65535,
    )
    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])
    admin_user_ids: list[str] = Field(
        default_factory=list,
        description="User ids allowed to call the admin routes (JSON list in the environment)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        """Absolute location of the SQLite database file."""
        return self.data_dir / self.database_name

    @property
    def presets_path(self) -> Path:
        """Location of the preset catalogue."""
        return self.data_dir / self.presets_file

    def public_url(self, mount: str, filename: str) -> str:
        """Build the public URL for a stored file.

        Args:
            mount: Static mount name (``uploads`` or ``outputs``)
            filename: File name inside the mount

        Returns:
            URL string, absolute when ``public_base_url`` is configured
        """
        return f"{self.public_base_url.rstrip('/')}/{mount}/{filename}"


# Global configuration instance
config = PhotoforgeConfig()
