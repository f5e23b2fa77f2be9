"""Shared fixtures for relay and client tests."""

import pytest

from src.mingle.metrics import MetricsCollector
from src.mingle.registry import SessionRegistry
from tests.helpers.fake_peer import FakePeerConnection


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh collector per test (never the process-wide singleton)."""
    return MetricsCollector()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture(autouse=True)
def reset_fake_peers() -> None:
    FakePeerConnection.instances.clear()
