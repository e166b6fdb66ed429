"""Configuration management for Pinworks.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PINWORKS_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PINWORKS_* prefix)
2. .env file in the project root
3. Default values defined in PinworksConfig

Example .env file:
    PINWORKS_DATABASE_PATH=data/pinworks.db
    PINWORKS_OUTPUTS_DIR=outputs
    PINWORKS_PUBLIC_BASE_URL=https://pins.example.com
    PINWORKS_QUEUE_WORKERS=2

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from pinworks.core.config import config

    print(config.database_path)
    print(config.outputs_dir)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: SQLite database location
- outputs_dir: Generated artifacts (``outputs/bulk/<job_id>/...``)
- uploads_dir: Uploaded source images
- assets_dir: Overlay and logo files referenced by templates

Provider Endpoints
------------------
Each provider adapter reads its base URL from this configuration so that
tests and self-hosted gateways can redirect traffic without code changes.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PinworksConfig(BaseSettings):
    """Main configuration for Pinworks.

    Values are loaded from environment variables with the PINWORKS_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Storage:
        data_dir : Path
            Directory holding the SQLite database
        database_path : Path | None
            SQLite database file (defaults to ``data_dir / "pinworks.db"``)
        outputs_dir : Path
            Directory for generated artifacts
        uploads_dir : Path
            Directory for uploaded source images
        assets_dir : Path
            Directory for template overlay/logo assets
        public_base_url : str
            Absolute URL prefix used in CSV exports

    Jobs:
        default_width, default_height : int
            Default output dimensions of a bulk job
        max_rows_per_job : int
            Upper bound on rows accepted in a single job
        max_quantity_per_row : int
            Upper bound on pins requested by a single row
        queue_workers : int
            Number of concurrent job queue workers

    Providers:
        http_timeout : float
            Timeout in seconds for provider HTTP calls
        poll_interval, poll_max_wait : float
            Polling cadence and maximum wait for queue-style providers (fal.ai)
        openai_base_url, deepseek_base_url, fal_queue_url, ark_base_url : str
            Provider API endpoints

    Uploads and users:
        max_upload_bytes : int
            Largest accepted source image upload
        admin_user_id, admin_email : str
            Administrator account created on startup when missing

    Server:
        server_host, server_port
            uvicorn bind address
        log_level
            Root logging level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PINWORKS_",
        case_sensitive=False,
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the SQLite database",
    )
    database_path: Path | None = Field(
        default=None,
        description="SQLite database file (defaults to data_dir/pinworks.db)",
    )
    outputs_dir: Path = Field(
        default=Path("outputs"),
        description="Directory to save generated artifacts",
    )
    uploads_dir: Path = Field(
        default=Path("uploads"),
        description="Directory for uploaded source images",
    )
    assets_dir: Path = Field(
        default=Path("assets"),
        description="Directory for template overlay and logo files",
    )
    public_base_url: str = Field(
        default="http://localhost:7860",
        description="Absolute URL prefix for exported media URLs",
    )

    # Job settings
    default_width: int = Field(default=1000, ge=256, le=4096)
    default_height: int = Field(default=1500, ge=256, le=4096)
    max_rows_per_job: int = Field(default=500, ge=1)
    max_quantity_per_row: int = Field(default=10, ge=1, le=100)
    queue_workers: int = Field(
        default=1,
        description="Number of concurrent bulk job workers",
        ge=1,
        le=16,
    )

    # Provider settings
    http_timeout: float = Field(default=120.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    poll_max_wait: float = Field(default=300.0, gt=0)
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    deepseek_base_url: str = Field(default="https://api.deepseek.com/v1")
    fal_queue_url: str = Field(default="https://queue.fal.run")
    ark_base_url: str = Field(default="https://ark.ap-southeast.bytepluses.com/api/v3")

    # Post-processing
    embed_camera_metadata: bool = Field(
        default=True,
        description="Write a randomized camera profile into final images",
    )

    max_upload_bytes: int = Field(
        default=20 * 1024 * 1024,
        description="Largest accepted source image upload",
        ge=1024,
    )

    # Users
    admin_user_id: str | None = Field(
        default="admin",
        description="Id of the administrator created on startup (None to skip)",
    )
    admin_email: str = Field(default="admin@localhost")

    # Server settings
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=7860, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        if self.database_path is None:
            self.database_path = self.data_dir / "pinworks.db"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.assets_dir.mkdir(parents=True, exist_ok=True)

    @property
    def bulk_outputs_dir(self) -> Path:
        """Root directory for bulk job artifacts."""
        return self.outputs_dir / "bulk"


# Global configuration instance
# Loads values from environment variables (PINWORKS_* prefix) and .env file.
config = PinworksConfig()
