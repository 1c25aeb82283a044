"""Root pytest configuration for all tests."""

from __future__ import annotations

import pytest

from agentdeck.config import Config, reset_config


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the global config cache from leaking between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> Config:
    """Default config without the queue handoff delay."""
    config = Config()
    config.coordinator.queue_delay = 0.0
    return config
