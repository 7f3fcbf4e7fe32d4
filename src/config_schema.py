"""Pydantic schema for configuration validation.

All config values are validated at startup. Typos and invalid values
fail fast with clear error messages.

Usage:
    from src.config_schema import load_validated_config, AppConfig
    config = load_validated_config("config/config.yaml")
    # config is now a validated AppConfig instance
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# BASE MODEL WITH STRICT VALIDATION
# =============================================================================

class StrictModel(BaseModel):
    """Base model that rejects unknown fields (catches typos)."""

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# REGISTRY MODEL
# =============================================================================

class RegistryConfig(StrictModel):
    """Deployment-level registry settings."""

    admin: str = Field(
        default="admin",
        min_length=1,
        description="Administrative identity allowed to pause/resume and tune rate limits"
    )


# =============================================================================
# RATE LIMITING MODEL
# =============================================================================

class RateLimitingConfig(StrictModel):
    """Fixed-window-reset rate limiting for mutating calls.

    Windows are measured in heights, not seconds. A window restarts from
    the most recent allowed call once window_length heights have elapsed.
    """

    enabled: bool = Field(
        default=True,
        description="Gate every mutating call (register_rate_limited is always gated)"
    )
    window_length: int = Field(
        default=100,
        gt=0,
        description="Window length in heights"
    )
    max_per_window: int = Field(
        default=10,
        gt=0,
        description="Maximum mutating calls per actor within one window"
    )


# =============================================================================
# SCHEDULER MODEL
# =============================================================================

ExecutorPolicy = Literal["requester", "recipient", "either"]


class SchedulerConfig(StrictModel):
    """Two-phase transfer scheduling."""

    delay: int = Field(
        default=10,
        ge=0,
        description="Heights between scheduling and expiry"
    )
    executor_policy: ExecutorPolicy = Field(
        default="either",
        description="Who may execute a scheduled transfer"
    )


# =============================================================================
# AUTHENTICITY MODEL
# =============================================================================

class AuthenticityConfig(StrictModel):
    """Attestation settings."""

    methods: list[str] = Field(
        default_factory=lambda: ["sha256", "keccak256"],
        min_length=1,
        description="Accepted hash-method tags"
    )
    allow_overwrite: bool = Field(
        default=True,
        description="Last-write-wins when a record is attested again"
    )

    @field_validator("methods")
    @classmethod
    def methods_are_unique(cls, v: list[str]) -> list[str]:
        """Reject duplicate or blank method tags."""
        if any(not m for m in v):
            raise ValueError("method tags must be non-empty")
        if len(set(v)) != len(v):
            raise ValueError(f"duplicate method tags: {v}")
        return v


# =============================================================================
# STORAGE MODEL
# =============================================================================

class StorageConfig(StrictModel):
    """Storage substrate selection."""

    backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        description="Storage backend"
    )
    path: str = Field(
        default="registry.db",
        description="SQLite database file (sqlite backend only)"
    )
    retry_max: int = Field(
        default=5,
        gt=0,
        description="Max attempts on 'database is locked'"
    )
    retry_base: float = Field(
        default=0.1,
        gt=0,
        description="Base backoff delay in seconds"
    )
    retry_max_delay: float = Field(
        default=5.0,
        gt=0,
        description="Backoff delay cap in seconds"
    )


# =============================================================================
# LOGGING MODEL
# =============================================================================

class LoggingConfig(StrictModel):
    """Event log configuration."""

    output_file: str | None = Field(
        default=None,
        description="JSONL file for registry events (None keeps events in memory only)"
    )
    default_recent: int = Field(
        default=50,
        gt=0,
        description="Number of recent events kept in memory"
    )


# =============================================================================
# ROOT CONFIG MODEL
# =============================================================================

class AppConfig(StrictModel):
    """Root configuration model for the entire application.

    All fields have sensible defaults, so an empty config file is valid.
    """

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    rate_limiting: RateLimitingConfig = Field(default_factory=RateLimitingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    authenticity: AuthenticityConfig = Field(default_factory=AuthenticityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# LOADING FUNCTIONS
# =============================================================================

def load_validated_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        pydantic.ValidationError: If config is invalid (with detailed error message).
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return AppConfig.model_validate(raw_config)


def validate_config_dict(config_dict: dict[str, Any]) -> AppConfig:
    """Validate a configuration dictionary.

    Args:
        config_dict: Configuration as a dictionary.

    Returns:
        Validated AppConfig instance.

    Raises:
        pydantic.ValidationError: If config is invalid.
    """
    return AppConfig.model_validate(config_dict)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Root config
    "AppConfig",
    # Sub-configs
    "RegistryConfig",
    "RateLimitingConfig",
    "SchedulerConfig",
    "ExecutorPolicy",
    "AuthenticityConfig",
    "StorageConfig",
    "LoggingConfig",
    # Functions
    "load_validated_config",
    "validate_config_dict",
]
