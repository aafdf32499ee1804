"""Configuration settings for kbuild_pipeline.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kbuild_pipeline.types import Arch

# Manifest filename looked up in the project root when no path is configured
DEFAULT_MANIFEST_NAME = "kbuild.yaml"


def _default_jobs() -> int:
    """Return the default parallelism for external build tools."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KBUILD_ prefix.
    CLI flags can override these at runtime. Paths left unset are derived
    from ``project_root``.
    """

    model_config = SettingsConfigDict(
        env_prefix="KBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    project_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the kernel project checkout",
    )
    rootfs_dir: Path | None = Field(
        default=None,
        description="Artifact root holding rootfs/<arch> trees (default: <project>/rootfs)",
    )
    image_dir: Path | None = Field(
        default=None,
        description="Directory receiving <arch>.img files (default: project root)",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Scratch and source cache directory (default: <project>/ignored)",
    )
    manifest_path: Path | None = Field(
        default=None,
        description="Pipeline manifest file (default: <project>/kbuild.yaml if present)",
    )

    # Operational modes
    default_arch: Arch = Field(
        default=Arch.X86_64,
        description="Architecture used when none is given",
    )
    offline: bool = Field(
        default=False,
        description="Offline mode - do not download sources",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        description="Parallel jobs passed to external build tools",
    )
    max_parallel_arches: int = Field(
        default=2,
        ge=1,
        le=8,
        description="Maximum architectures built concurrently",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for source downloads",
    )
    command_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for a single external tool invocation",
    )
    lock_timeout: int = Field(
        default=600,
        ge=1,
        description="Timeout waiting for an architecture or source lock",
    )

    # Reproducibility
    source_date_epoch: int = Field(
        default=0,
        ge=0,
        description="Timestamp pinned into generated images",
    )

    @property
    def rootfs_root(self) -> Path:
        """Directory holding every rootfs/<arch> tree and artifact markers."""
        return self.rootfs_dir or self.project_root / "rootfs"

    @property
    def image_root(self) -> Path:
        """Directory receiving disk images."""
        return self.image_dir or self.project_root

    @property
    def work_root(self) -> Path:
        """Directory for fetched sources, build scratch and locks."""
        return self.work_dir or self.project_root / "ignored"

    @property
    def sources_dir(self) -> Path:
        return self.work_root / "sources"

    @property
    def target_dir(self) -> Path:
        return self.work_root / "target"

    @property
    def locks_dir(self) -> Path:
        return self.work_root / ".locks"

    @property
    def logs_dir(self) -> Path:
        return self.target_dir / "logs"

    def resolve_manifest_path(self) -> Path | None:
        """Return the manifest file to load, or None to use built-in defaults."""
        if self.manifest_path is not None:
            return self.manifest_path
        candidate = self.project_root / DEFAULT_MANIFEST_NAME
        return candidate if candidate.exists() else None


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


__all__ = ["DEFAULT_MANIFEST_NAME", "Settings", "get_settings", "print_settings_json"]
