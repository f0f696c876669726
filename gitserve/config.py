"""Configuration for gitserve.

Settings come from ``<home>/config.yaml`` (optional), then environment
overrides. ``home`` defaults to ``~/.gitserve`` or ``$GITSERVE_HOME``.

Example config.yaml:

    retention_seconds: 300
    shell: /bin/bash
    default_command: make serve
    git_timeout: 60
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

CONFIG_FILENAME = "config.yaml"

ENV_HOME = "GITSERVE_HOME"
ENV_RETENTION = "GITSERVE_RETENTION_SECONDS"
ENV_SHELL = "GITSERVE_SHELL"


class ConfigError(Exception):
    """Configuration file or environment is invalid."""

    pass


def default_home() -> Path:
    return Path(os.environ.get(ENV_HOME) or Path.home() / ".gitserve").expanduser()


class Settings(BaseModel):
    """Resolved gitserve settings."""

    home: Path = Field(default_factory=default_home)
    retention_seconds: float = Field(default=60.0, ge=0)
    shell: str = "/bin/sh"
    default_command: str = "npm run dev"
    git_timeout: float = Field(default=120.0, gt=0)

    @property
    def store_dir(self) -> Path:
        return self.home / "store"

    @property
    def workspaces_dir(self) -> Path:
        return self.home / "workspaces"

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=self.retention_seconds)


def _load_yaml(config_path: Path) -> dict:
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(home: Path | str | None = None) -> Settings:
    """Build settings from defaults, ``config.yaml`` and the environment."""
    home_path = Path(home).expanduser() if home else default_home()
    values = _load_yaml(home_path / CONFIG_FILENAME)
    values["home"] = home_path

    if ENV_RETENTION in os.environ:
        values["retention_seconds"] = os.environ[ENV_RETENTION]
    if ENV_SHELL in os.environ:
        values["shell"] = os.environ[ENV_SHELL]

    try:
        return Settings.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid gitserve configuration: {e}") from e
