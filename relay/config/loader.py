"""
Configuration loader for the provider relay.

Loads relay.yaml, validates it against the Pydantic schema, and caches the
result per path. A `.env` file next to the working directory is loaded
first (without overriding variables already set) so API keys and
RELAY_* variables can live there during development.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from relay.config.schema import RelaySettings
from relay.exceptions import ConfigurationError

CONFIG_ENV = "RELAY_CONFIG"

# Module-level cache: resolved path (or "<defaults>") -> RelaySettings
_loaded_settings: dict[str, RelaySettings] = {}


def load_settings(
    config_path: Optional[str | Path] = None,
    *,
    env_file: Optional[str | Path] = None,
    reload: bool = False,
) -> RelaySettings:
    """
    Load and validate relay settings.

    Args:
        config_path: Explicit YAML path. Falls back to $RELAY_CONFIG, then
                     to built-in defaults when neither is set.
        env_file: Optional .env path (default: search from the cwd).
        reload: Bypass the cache and read the file again.

    Raises:
        ConfigurationError: file missing, empty, not a mapping, or invalid.
    """
    load_dotenv(env_file, override=False)

    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV) or None

    cache_key = str(Path(config_path).resolve()) if config_path else "<defaults>"
    if not reload and cache_key in _loaded_settings:
        return _loaded_settings[cache_key]

    if config_path is None:
        settings = RelaySettings()
    else:
        settings = _read_settings(Path(config_path))

    _loaded_settings[cache_key] = settings
    return settings


def _read_settings(config_path: Path) -> RelaySettings:
    if not config_path.exists():
        raise ConfigurationError(
            f"Config not found: {config_path}",
            config_path=str(config_path),
        )

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raise ConfigurationError(f"Config file is empty: {config_path}", config_path=str(config_path))
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Config file must contain a mapping: {config_path}",
            config_path=str(config_path),
        )

    try:
        return RelaySettings(**raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid relay config '{config_path}':\n{e}",
            config_path=str(config_path),
        ) from e


def clear_settings_cache() -> None:
    """Forget cached settings (used by tests and hot reload)."""
    _loaded_settings.clear()
