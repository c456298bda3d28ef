"""Shared test fixtures for the Aether usage service tests."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

import pytest

from aether_usage.config import ServiceConfig, load_config
from aether_usage.store import InMemoryStore
from aether_usage.tiers import TierPolicy, default_tier_policy


class FakeClock:
    """Settable clock handed to services in place of utcnow."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "provider": {
            "base_url": "https://api.example.com/v1",
            "api_key_env": "TEST_API_KEY",
            "default_model": "test-model",
            "premium_model": "test-premium-model",
        },
        "generator": {
            "max_attempts": 3,
            "base_delay_seconds": 0.0,
            "attempt_timeout_seconds": 1.0,
        },
        "cooldowns": {"default_minutes": 30, "minutes": {"growth": 60}},
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> ServiceConfig:
    """Return a loaded test ServiceConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def clock() -> FakeClock:
    """A clock on day 10 of the 2024-01-29 response period."""
    return FakeClock(datetime(2024, 2, 7, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def policy() -> TierPolicy:
    return default_tier_policy()
