"""Configuration settings for layerchef.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default dependency cache directory."""
    return Path.home() / ".cache" / "layerchef"


def _default_images_dir() -> Path:
    """Return the default runtime images directory."""
    return Path.home() / ".local" / "share" / "layerchef" / "images"


def _default_builds_dir() -> Path:
    """Return the default directory for per-build logs and recipes."""
    return Path.home() / ".local" / "share" / "layerchef" / "builds"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "layerchef" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the LAYERCHEF_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="LAYERCHEF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for dependency layers and environment markers",
    )
    images_dir: Path = Field(
        default_factory=_default_images_dir,
        description="Root directory for packaged runtime images",
    )
    builds_dir: Path = Field(
        default_factory=_default_builds_dir,
        description="Root directory for per-build logs and recipes",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Scratch directory for workspaces (uses system default if not set)",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    keep_workspace: bool = Field(
        default=False,
        description="Keep build workspaces after the pipeline finishes",
    )

    # Timeouts (in seconds)
    lock_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout waiting for a dependency layer lock",
    )
    setup_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for each toolchain setup command",
    )
    cook_timeout: int = Field(
        default=7200,
        ge=1,
        description="Timeout for each dependency cook command",
    )
    build_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for each application build command",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
