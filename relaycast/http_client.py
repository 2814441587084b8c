"""
Standardized HTTP client configuration with proper timeouts.

Every request relaycast makes goes through an aiohttp ClientSession created
here, with a timeout preset chosen per request kind:

- STREAM_TIMEOUT: long-lived streaming response. No total limit, but a read
  timeout comfortably above two server heartbeat intervals so a silently
  half-open connection eventually surfaces as a read failure.
- POLL_TIMEOUT: one poll request.
- HEALTH_CHECK_TIMEOUT: the lightweight health check; fails fast.

Usage:
    from relaycast.http_client import create_client_session, POLL_TIMEOUT

    async with create_client_session() as session:
        async with session.get(url, timeout=POLL_TIMEOUT) as resp:
            events = await resp.json()
"""

from __future__ import annotations

import aiohttp
from aiohttp import ClientTimeout

__all__ = [
    "DEFAULT_TIMEOUT",
    "STREAM_TIMEOUT",
    "POLL_TIMEOUT",
    "HEALTH_CHECK_TIMEOUT",
    "NO_CACHE_HEADERS",
    "get_default_timeout",
    "stream_timeout",
    "create_client_session",
]

# Default timeout for most HTTP requests (30 seconds total)
DEFAULT_TIMEOUT = ClientTimeout(
    total=30,  # Total time for the entire request
    connect=10,  # Time to establish connection
    sock_read=20,  # Time to read response
)

# Streaming responses stay open indefinitely; only reads are bounded
STREAM_TIMEOUT = ClientTimeout(
    total=None,
    connect=10,
    sock_read=75,  # 2.5x the default 30s heartbeat
)

POLL_TIMEOUT = ClientTimeout(
    total=15,
    connect=5,
    sock_read=10,
)

HEALTH_CHECK_TIMEOUT = ClientTimeout(
    total=5,
    connect=3,
    sock_read=3,
)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache"}


def get_default_timeout() -> ClientTimeout:
    """Get the default timeout configuration.

    Returns:
        ClientTimeout with sensible defaults for most operations.
    """
    return DEFAULT_TIMEOUT


def stream_timeout(heartbeat_interval: float) -> ClientTimeout:
    """Streaming timeout whose read limit tracks the heartbeat interval."""
    return ClientTimeout(total=None, connect=10, sock_read=heartbeat_interval * 2.5)


def create_client_session(
    timeout: ClientTimeout | None = None,
    **kwargs,
) -> aiohttp.ClientSession:
    """Create an aiohttp ClientSession with proper timeout configuration.

    Args:
        timeout: Optional custom timeout. Uses DEFAULT_TIMEOUT if not specified.
        **kwargs: Additional arguments passed to ClientSession.

    Returns:
        Configured aiohttp.ClientSession.
    """
    if timeout is None:
        timeout = DEFAULT_TIMEOUT
    return aiohttp.ClientSession(timeout=timeout, **kwargs)
