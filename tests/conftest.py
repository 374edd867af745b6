"""Pytest fixtures and configuration for PO sync alert tests.

Provides common fixtures for configuration and the database store.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from posync.config import reset_config
from posync.config_schema import AppConfig
from posync.db.store import DatabaseStore


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1
our_domain: "example.com"

alerts:
  escalation_hours: 4
  amount_tolerance: 0.05

trust:
  manual_domains: ["partner.org"]
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "our_domain": "example.com",
        "alerts": {"escalation_hours": 4, "amount_tolerance": 0.05},
        "trust": {"manual_domains": ["partner.org"]},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the POSYNC_CONFIG_PATH environment variable."""
    old_value = os.environ.get("POSYNC_CONFIG_PATH")
    os.environ["POSYNC_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["POSYNC_CONFIG_PATH"]
    else:
        os.environ["POSYNC_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    store = DatabaseStore(data_dir / "test.db")
    await store.initialize()
    return store
