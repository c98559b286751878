"""Configuration management for the plugin updater."""

import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Conservative name check for refs, remotes and supervised service names
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")

# npm script names, e.g. "build:plugin"
_SCRIPT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/-]*$")


def _default_plugin_path() -> Path:
    # src/plugin_updater/config.py -> checkout root
    return Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """Updater settings loaded from ``PLUGIN_UPDATER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLUGIN_UPDATER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Target checkout
    plugin_path: Path = Field(
        default_factory=_default_plugin_path,
        description="Root of the plugin working copy (holds package.json and .git)",
    )
    remote_name: str = Field(default="origin", description="Git remote tracked for updates")
    branch: str = Field(default="main", description="Branch whose tip is adopted")

    # Locking
    lock_filename: str = Field(default=".update.lock", description="Lock file inside plugin_path")
    lock_ttl_seconds: float = Field(default=1800, gt=0, description="Lock staleness TTL")

    # Network probes
    probe_timeout_seconds: float = Field(default=5, gt=0)
    region_probe_timeout_seconds: float = Field(default=3, gt=0)

    # Subprocess timeouts
    command_timeout_seconds: float = Field(default=120, gt=0)
    fetch_timeout_seconds: float = Field(default=300, gt=0)
    install_timeout_seconds: float = Field(default=300, gt=0)
    build_timeout_seconds: float = Field(default=300, gt=0)
    restart_timeout_seconds: float = Field(default=30, gt=0)
    kill_grace_seconds: float = Field(default=5, ge=0)

    # External tools (bare names are resolved in the approved directories)
    npm_command: str = Field(default="npm", description="Dependency manager executable")
    supervisor_command: str = Field(default="pm2", description="Process supervisor executable")

    # Dependencies and build
    allow_install_scripts: bool = Field(
        default=False, description="Allow dependency install-time scripts to run"
    )
    install_production_only: bool = Field(
        default=False, description="Skip dev dependencies (the build usually needs them)"
    )
    build_script: str = Field(default="build:plugin", description="package.json build script")
    build_output_dir: str = Field(default="dist", description="Live build output directory")

    # Restart
    service_name: str = Field(default="hydrooj", description="Process supervisor service name")
    restart_delay_seconds: float = Field(default=15, ge=0)

    # Progress reporting
    max_log_lines: int = Field(default=1000, gt=0)
    progress_min_interval_seconds: float = Field(default=0.25, ge=0)

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("remote_name", "branch", "service_name")
    @classmethod
    def _validate_safe_name(cls, value: str) -> str:
        if not _SAFE_NAME_RE.match(value) or ".." in value:
            raise ValueError(f"unsafe name: {value!r}")
        return value

    @field_validator("build_script")
    @classmethod
    def _validate_script_name(cls, value: str) -> str:
        if not _SCRIPT_NAME_RE.match(value) or ".." in value:
            raise ValueError(f"unsafe script name: {value!r}")
        return value

    @field_validator("npm_command", "supervisor_command")
    @classmethod
    def _validate_tool(cls, value: str) -> str:
        if value.startswith("/"):
            return value
        if "/" in value or not _SAFE_NAME_RE.match(value):
            raise ValueError(f"tool must be a bare name or an absolute path: {value!r}")
        return value

    @field_validator("build_output_dir", "lock_filename")
    @classmethod
    def _validate_plain_filename(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            raise ValueError(f"must be a plain file name: {value!r}")
        return value

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def lock_path(self) -> Path:
        return self.plugin_path / self.lock_filename


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
