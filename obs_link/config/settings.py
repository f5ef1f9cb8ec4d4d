"""
config/settings.py — Connection settings via env vars + YAML override.

Priority: ENV > config.yaml > defaults

The core never reads these directly: OBSLink.from_settings() and the CLI
turn them into plain constructor arguments.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class _EnvFirstSettings(BaseSettings):
    """Environment beats values passed in from YAML."""

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        return env_settings, init_settings, dotenv_settings, file_secret_settings


class OBSSettings(_EnvFirstSettings):
    host: str = Field("localhost", description="OBS WebSocket host")
    port: int = Field(4455, ge=1, le=65535, description="OBS WebSocket port")
    password: str = Field("", description="OBS WebSocket password")
    probe_attempts: int = Field(20, ge=1, description="Startup reachability probes before giving up")
    probe_interval: float = Field(1.0, ge=0, description="Seconds between startup probes")
    reconnect_interval: float = Field(1.0, ge=0, description="Seconds between reconnect attempts (retried forever)")
    open_timeout: float = Field(5.0, gt=0, description="Seconds allowed for connect + handshake")
    request_timeout: float = Field(5.0, gt=0, description="Seconds before a command counts as unanswered")
    command_retries: int = Field(1, ge=0, description="Resends of an unanswered command")

    model_config = SettingsConfigDict(env_prefix="OBS_")


class LogSettings(_EnvFirstSettings):
    level: str = Field("info", description="Log level")

    model_config = SettingsConfigDict(env_prefix="LOG_")

    @field_validator("level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        v = v.lower()
        if v not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return v


class Settings(BaseSettings):
    obs: OBSSettings = Field(default_factory=OBSSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    config_file: Path = Field(Path("config.yaml"), description="YAML file the settings were read from")

    model_config = SettingsConfigDict(env_prefix="LINK_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Read ``config_path`` (or $LINK_CONFIG_FILE, or ./config.yaml) and apply env on top."""
        path = Path(config_path or os.environ.get("LINK_CONFIG_FILE", "config.yaml"))
        raw = yaml.safe_load(path.read_text()) if path.is_file() else None
        sections = raw if isinstance(raw, dict) else {}
        return cls(
            obs=OBSSettings(**(sections.get("obs") or {})),
            log=LogSettings(**(sections.get("log") or {})),
            config_file=path,
        )

    def to_yaml(self, path: Path) -> None:
        body = self.model_dump(mode="json", exclude={"config_file"})
        path.write_text(yaml.safe_dump(body, default_flow_style=False, sort_keys=False))


# CLI-side accessor; the core takes explicit arguments
_current: Optional[Settings] = None


def get_settings() -> Settings:
    global _current
    if _current is None:
        _current = Settings.load()
    return _current


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _current
    _current = Settings.load(config_path)
    return _current
