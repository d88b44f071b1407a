"""
Test configuration and fixtures for the DevTools MCP bridge tests.

Shared settings with short timers, fake plugin links and sockets.
"""

from __future__ import annotations

import io
import tempfile
from pathlib import Path

import pytest

from devtools_bridge.config import Settings
from devtools_bridge.services.correlator import RequestCorrelator

from tests._helpers import FakeLink


@pytest.fixture
def temp_dir():
    """Create a temporary directory for state files."""
    with tempfile.TemporaryDirectory() as tempdir:
        yield Path(tempdir)


@pytest.fixture
def test_settings(temp_dir) -> Settings:
    """Settings with every timer shortened and state kept in temp_dir."""
    return Settings(
        host="127.0.0.1",
        port_min=27125,
        port_max=27135,
        ping_interval=0.05,
        listener_restart_delay=0.01,
        bind_retry_delay=0.01,
        sweep_retry_delay=0.01,
        request_timeout=0.2,
        health_check_interval=60.0,
        health_check_delay=60.0,
        max_restarts=5,
        restart_cooldown=60.0,
        restart_delay=0.0,
        supervisor_check_interval=60.0,
        child_stop_timeout=0.5,
        state_dir=temp_dir,
    )


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def correlator(fake_link) -> RequestCorrelator:
    return RequestCorrelator(fake_link, timeout=0.2)


@pytest.fixture
def stdout_buffer() -> io.StringIO:
    return io.StringIO()


# Test markers
def pytest_configure(config):
    """Configure custom test markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that open real sockets"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
