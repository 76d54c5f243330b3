"""Settings for commkit.

Settings Loading Priority (highest to lowest):
    1. Constructor arguments
    2. Environment variables (COMMKIT_* prefix)
    3. .env file
    4. Default values

The global instance is managed with get_settings / set_settings /
reload_settings.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommkitSettings(BaseSettings):
    """Settings for logging and the gosh executor."""

    model_config = SettingsConfigDict(
        env_prefix="COMMKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging configuration
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="warning",
        title="Log Level",
        description="Logging verbosity level",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        title="Log Format",
        description="Log output format (console for dev, json for production)",
    )

    # Executor configuration
    gosh_config_file: Path | None = Field(
        default=None,
        title="Gosh Config File",
        description="YAML file with executor rules, checked before the default locations",
    )
    kill_timeout: float = Field(
        default=6.0,
        gt=0,
        title="Kill Timeout",
        description="Seconds before an external process started by a script is killed",
    )

    @field_validator("gosh_config_file", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path | None) -> Path | None:
        """Expand ~ in paths."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


_settings_instance: CommkitSettings | None = None


def get_settings() -> CommkitSettings:
    """Get the global settings, creating them on first access."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = CommkitSettings()
    return _settings_instance


def set_settings(settings: CommkitSettings) -> None:
    """Set the global settings instance."""
    global _settings_instance
    _settings_instance = settings


def reload_settings() -> CommkitSettings:
    """Discard the global settings and load them again."""
    global _settings_instance
    _settings_instance = None
    return get_settings()
