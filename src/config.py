"""Process-wide registry configuration.

The shipped defaults live in config/config.yaml. REGISTRY_CONFIG points
the loader at another file. The file is validated once and cached;
CollectibleRegistry falls back to the cached config when it is built
without one.

Usage:
    from src.config import load_config, get_validated_config

    load_config("deploy/registry.yaml")
    delay = get_validated_config().scheduler.delay
"""

from __future__ import annotations

import os
from pathlib import Path

from .config_schema import AppConfig, load_validated_config


_validated_config: AppConfig | None = None

DEFAULT_CONFIG_PATH: Path = Path(__file__).parent.parent / "config" / "config.yaml"


def config_path(explicit: str | None = None) -> Path:
    """Which file to load: explicit path, then $REGISTRY_CONFIG, then the default."""
    if explicit:
        return Path(explicit)
    env_path = os.getenv("REGISTRY_CONFIG")
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> AppConfig:
    """Validate a config file and make it the cached config.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        pydantic.ValidationError: If the file is invalid.
    """
    global _validated_config
    _validated_config = load_validated_config(config_path(path))
    return _validated_config


def get_validated_config() -> AppConfig:
    """The cached config, loading the resolved file on first use."""
    if _validated_config is None:
        return load_config()
    return _validated_config


def reset_config() -> None:
    """Drop the cached config so the next access reloads from disk."""
    global _validated_config
    _validated_config = None
