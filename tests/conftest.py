"""
Shared pytest fixtures for the relaycast test suite.
"""

from unittest.mock import MagicMock

import pytest
from aiohttp.test_utils import TestServer

from relaycast.config import ClientConfig, MonitorConfig
from relaycast.event_log import EventLog
from relaycast.http_client import create_client_session
from relaycast.logging_config import clear_context
from relaycast.server import create_app


def pytest_configure(config):
    """Register custom pytest markers for test tiers.

    - unit: isolated tests with no I/O
    - integration: tests that run the aiohttp server in-process
    - slow: tests that wait on real timers
    """
    config.addinivalue_line("markers", "unit: isolated unit tests with no external dependencies")
    config.addinivalue_line("markers", "integration: tests running the HTTP server in-process")
    config.addinivalue_line("markers", "slow: tests that wait on real timers")


# ============================================================================
# Global Test Setup
# ============================================================================


@pytest.fixture(autouse=True)
def clean_log_context():
    """Keep log context fields from leaking between tests."""
    clear_context()
    yield
    clear_context()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def client_config():
    """Client config pointing at an address nothing listens on."""
    return ClientConfig.for_base_url(
        "http://relay.invalid",
        "user-1",
        poll_interval=0.01,
        max_reconnect_attempts=5,
    )


@pytest.fixture
def fast_monitor_config():
    """Monitor config with zero backoff and timers too slow to interfere."""
    return MonitorConfig(
        heartbeat_interval=60.0,
        max_reconnect_attempts=5,
        reconnect_delay=0.0,
        max_reconnect_delay=0.0,
        max_jitter=0.0,
        health_check_interval=60.0,
    )


@pytest.fixture
def mock_session():
    """Stand-in for an aiohttp session the fake adapters never use."""
    return MagicMock(name="ClientSession")


# ============================================================================
# Server Fixtures
# ============================================================================


@pytest.fixture
def event_log():
    return EventLog(max_events=1000)


@pytest.fixture
async def relay_server(event_log):
    """Event log server on an ephemeral port with a short heartbeat."""
    server = TestServer(create_app(event_log, heartbeat_interval=0.2))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def server_client_config(relay_server):
    """Client config for the in-process server."""
    return ClientConfig.for_base_url(
        str(relay_server.make_url("/")),
        "user-1",
        poll_interval=0.05,
    )


@pytest.fixture
async def http_session():
    """Real aiohttp session, closed after the test."""
    async with create_client_session() as session:
        yield session
