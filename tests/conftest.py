"""Pytest fixtures for collectible registry tests.

Common fixtures for testing the registry and its components.
"""

from __future__ import annotations

# Load environment variables from .env before any tests run
from dotenv import load_dotenv

load_dotenv()

from pathlib import Path
from typing import Any

import pytest

from src.config_schema import AppConfig, validate_config_dict
from src.registry.access import AccessControl
from src.registry.clock import TickClock
from src.registry.records import RecordStore
from src.registry.registry import CollectibleRegistry
from src.registry.state import RegistryState
from src.registry.storage import InMemoryStore


ADMIN = "admin"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "feature(name): mark test as belonging to a feature. "
        "Usage: @pytest.mark.feature('scheduler')"
    )


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options."""
    parser.addoption(
        "--feature",
        action="store",
        type=str,
        default=None,
        help="Run tests for a specific feature (e.g., --feature scheduler)",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Filter tests based on command-line options."""
    feature_filter = config.getoption("--feature")
    if feature_filter is None:
        return
    selected = []
    deselected = []
    for item in items:
        marker = item.get_closest_marker("feature")
        if marker is not None:
            feature_name = marker.args[0] if marker.args else ""
            if feature_name == feature_filter:
                selected.append(item)
                continue
        deselected.append(item)
    config.hook.pytest_deselected(items=deselected)
    items[:] = selected


@pytest.fixture
def minimal_config() -> dict[str, Any]:
    """Create a minimal configuration dict for testing.

    Rate limiting stays on with the default window; tests that issue
    more than ten mutations per actor turn it off explicitly.
    """
    return {
        "registry": {"admin": ADMIN},
        "rate_limiting": {"enabled": True, "window_length": 100, "max_per_window": 10},
        "scheduler": {"delay": 10, "executor_policy": "either"},
        "authenticity": {"methods": ["sha256", "keccak256"], "allow_overwrite": True},
        "storage": {"backend": "memory"},
        "logging": {"output_file": None, "default_recent": 50},
    }


@pytest.fixture
def app_config(minimal_config: dict[str, Any]) -> AppConfig:
    """Validated config built from minimal_config."""
    return validate_config_dict(minimal_config)


@pytest.fixture
def clock() -> TickClock:
    """Height source starting at 0."""
    return TickClock()


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory substrate."""
    return InMemoryStore()


@pytest.fixture
def state(store: InMemoryStore) -> RegistryState:
    """Registry state with default tunables."""
    return RegistryState(store, ADMIN)


@pytest.fixture
def records(store: InMemoryStore, state: RegistryState) -> RecordStore:
    """Record store over the shared substrate."""
    return RecordStore(store, state)


@pytest.fixture
def access(store: InMemoryStore, records: RecordStore) -> AccessControl:
    """Access engine subscribed to the record store."""
    return AccessControl(store, records)


@pytest.fixture
def registry(app_config: AppConfig, clock: TickClock, store: InMemoryStore) -> CollectibleRegistry:
    """Registry facade on an in-memory store with a manual clock."""
    return CollectibleRegistry(app_config, clock=clock, store=store)


@pytest.fixture
def logged_registry(
    minimal_config: dict[str, Any], clock: TickClock, tmp_path: Path
) -> CollectibleRegistry:
    """Registry that also writes its event log to a temp JSONL file."""
    config = dict(minimal_config)
    config["logging"] = {"output_file": str(tmp_path / "registry.jsonl"), "default_recent": 50}
    return CollectibleRegistry(validate_config_dict(config), clock=clock)
