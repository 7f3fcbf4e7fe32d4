"""Collectible registry source package.

This package contains:
- config: Configuration loading and management
- config_schema: Pydantic schema for config/config.yaml
- registry: Records, access control, rate limiting, attestations,
  scheduled transfers and the CollectibleRegistry facade
"""

from __future__ import annotations

__all__: list[str] = []
