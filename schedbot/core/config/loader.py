"""Configuration loader — YAML file + env override."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from schedbot.core.config.schema import Config

_SEARCH_PATHS = (
    Path("config.yaml"),
    Path("~/.schedbot/config.yaml"),
)


def load_config(config_path: str | Path | None = None, **overrides: Any) -> Config:
    """
    Load configuration.

    Resolution order for config file:
        1. Explicit ``config_path`` argument
        2. ``SCHEDBOT_CONFIG`` env variable
        3. ``./config.yaml`` in cwd, then ``~/.schedbot/config.yaml``

    Values priority (handled by pydantic-settings):
        env vars  >  .env file  >  YAML  >  defaults

    ``overrides`` are merged over the YAML sections (used by the CLI for
    flags such as ``--db``).
    """
    data = _load_yaml(_resolve_path(config_path))
    for section, values in overrides.items():
        if isinstance(values, dict):
            data[section] = {**data.get(section, {}), **values}
        else:
            data[section] = values
    return Config(**data)


def _resolve_path(config_path: str | Path | None = None) -> Path | None:
    """Resolve config file path."""
    if config_path:
        return Path(config_path).expanduser()

    env = os.environ.get("SCHEDBOT_CONFIG")
    if env:
        return Path(env).expanduser()

    for candidate in _SEARCH_PATHS:
        path = candidate.expanduser()
        if path.exists():
            return path
    return None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    """Load YAML file, return empty dict if not found."""
    if not path or not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data
