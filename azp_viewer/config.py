"""
Settings for azp-viewer.

Defaults, overridden by an optional YAML file, overridden by
``AZP_VIEWER_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_CONFIG_FILE = "azp-viewer.yaml"
ENV_PREFIX = "AZP_VIEWER_"

_POSITIVE_FLOATS = {"status_interval", "log_interval", "grace_delay", "keepalive"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(ValueError):
    """Invalid or unreadable configuration."""


@dataclass(frozen=True)
class Settings:
    status_interval: float = 5.0  # run status polling, seconds
    log_interval: float = 2.0  # log tailing, seconds
    grace_delay: float = 3.0  # delay of the single refresh after completion
    keepalive: float = 15.0  # SSE keep-alive comments
    host: str = "127.0.0.1"
    port: int = 8787
    service: str | None = None  # "module:attribute" collaborator factory
    log_level: str = "WARNING"


def _coerce(name: str, value: Any) -> Any:
    if name in _POSITIVE_FLOATS:
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {value!r}")
        if number <= 0:
            raise ConfigError(f"{name} must be positive, got {value!r}")
        return number
    if name == "port":
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"port must be an integer, got {value!r}")
        if not 0 < port < 65536:
            raise ConfigError(f"port out of range: {port}")
        return port
    if name == "log_level":
        level = str(value).upper()
        if level not in _LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {value!r}")
        return level
    if value is None:
        return None
    return str(value)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return data


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build the effective settings.

    When *path* is None, ``azp-viewer.yaml`` in the working directory is
    read if present. An explicit *path* must exist.
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    overrides: dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Settings file not found: {config_path}")
    else:
        config_path = Path.cwd() / DEFAULT_CONFIG_FILE

    if config_path.exists():
        data = _read_yaml(config_path)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown settings in {config_path}: {unknown}")
        for name, value in data.items():
            overrides[name] = _coerce(name, value)

    for name in known:
        env_value = environ.get(ENV_PREFIX + name.upper())
        if env_value is not None and env_value != "":
            overrides[name] = _coerce(name, env_value)

    return replace(Settings(), **overrides)
