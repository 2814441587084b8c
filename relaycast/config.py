"""
Configuration for the delivery client, the health monitor and the server.

All configs are frozen dataclasses validated on construction, with
``with_overrides`` for derived copies and ``from_env`` for environment
variable overrides.

Environment variables (prefix ``RELAYCAST_``):
    RELAYCAST_SUBSCRIBER_ID, RELAYCAST_BASE_URL
    RELAYCAST_POLL_INTERVAL, RELAYCAST_POLL_LIMIT
    RELAYCAST_MAX_RECONNECT_ATTEMPTS, RELAYCAST_DEDUP_WINDOW
    RELAYCAST_HEARTBEAT_INTERVAL, RELAYCAST_RECONNECT_DELAY
    RELAYCAST_MAX_RECONNECT_DELAY, RELAYCAST_MAX_JITTER
    RELAYCAST_LATENCY_THRESHOLD_MS, RELAYCAST_HEALTH_CHECK_INTERVAL
    RELAYCAST_HOST, RELAYCAST_PORT, RELAYCAST_MAX_EVENTS
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

from relaycast.exceptions import ConfigurationError

ENV_PREFIX = "RELAYCAST_"

STREAM_PATH = "/realtime/stream"
POLL_PATH = "/realtime/poll"
HEALTH_PATH = "/health"


def _get_env_int(name: str) -> Optional[int]:
    """Get an integer from environment variable, or None if not set/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _get_env_float(name: str) -> Optional[float]:
    """Get a float from environment variable, or None if not set/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _env_overrides(cls: type, prefix: str) -> dict[str, Any]:
    """Collect overrides for every dataclass field that has an env variable set."""
    overrides: dict[str, Any] = {}
    for f in fields(cls):
        name = f"{prefix}{f.name.upper()}"
        if f.type in ("int", int):
            value: Any = _get_env_int(name)
        elif f.type in ("float", float):
            value = _get_env_float(name)
        else:
            value = os.environ.get(name)
        if value is not None:
            overrides[f.name] = value
    return overrides


@dataclass(frozen=True)
class MonitorConfig:
    """Thresholds for the health monitor.

    Intervals and delays are in seconds; latency is in milliseconds to match
    the values carried in ConnectionHealth.

    Attributes:
        heartbeat_interval: Staleness check period. The connection is
            considered stale after twice this long without an update.
        max_reconnect_attempts: Reconnect attempts allowed before giving up.
        reconnect_delay: Base delay for exponential backoff.
        max_reconnect_delay: Upper bound for any backoff delay.
        max_jitter: Upper bound of the uniform jitter added to backoff.
        latency_threshold_ms: Latency above which the link is degraded.
        health_check_interval: Period of the active health check.
    """

    heartbeat_interval: float = 30.0
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    max_jitter: float = 1.0
    latency_threshold_ms: float = 5000.0
    health_check_interval: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.heartbeat_interval <= 0:
            raise ConfigurationError("monitor", "heartbeat_interval must be positive")
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("monitor", "max_reconnect_attempts must be >= 0")
        if self.reconnect_delay < 0:
            raise ConfigurationError("monitor", "reconnect_delay must be >= 0")
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ConfigurationError("monitor", "max_reconnect_delay must be >= reconnect_delay")
        if self.max_jitter < 0:
            raise ConfigurationError("monitor", "max_jitter must be >= 0")
        if self.latency_threshold_ms <= 0:
            raise ConfigurationError("monitor", "latency_threshold_ms must be positive")
        if self.health_check_interval <= 0:
            raise ConfigurationError("monitor", "health_check_interval must be positive")

    def with_overrides(self, **overrides: Any) -> MonitorConfig:
        """Create a new config with the given non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> MonitorConfig:
        return cls(**_env_overrides(cls, prefix))


@dataclass(frozen=True)
class ClientConfig:
    """Immutable configuration of a DeliveryClient.

    Attributes:
        stream_endpoint: URL of the long-lived streaming endpoint.
        poll_endpoint: URL of the polling endpoint.
        health_endpoint: URL checked by the health monitor.
        subscriber_id: Identifier sent with every request.
        poll_interval: Seconds between the end of one poll and the next.
        poll_limit: Maximum events requested per poll.
        max_reconnect_attempts: Streaming reconnect ceiling, copied into
            the monitor config when the client builds its own monitor.
        dedup_window: Number of recent event ids remembered to drop
            redelivered events. 0 disables id de-duplication.
    """

    stream_endpoint: str
    poll_endpoint: str
    health_endpoint: str
    subscriber_id: str = "anonymous"
    poll_interval: float = 5.0
    poll_limit: int = 50
    max_reconnect_attempts: int = 5
    dedup_window: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration values."""
        for name in ("stream_endpoint", "poll_endpoint", "health_endpoint"):
            if not getattr(self, name):
                raise ConfigurationError("client", f"{name} is required")
        if not self.subscriber_id:
            raise ConfigurationError("client", "subscriber_id must not be empty")
        if self.poll_interval <= 0:
            raise ConfigurationError("client", "poll_interval must be positive")
        if self.poll_limit < 1:
            raise ConfigurationError("client", "poll_limit must be at least 1")
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("client", "max_reconnect_attempts must be >= 0")
        if self.dedup_window < 0:
            raise ConfigurationError("client", "dedup_window must be >= 0")

    def with_overrides(self, **overrides: Any) -> ClientConfig:
        """Create a new config with the given non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def for_base_url(cls, base_url: str, subscriber_id: str, **overrides: Any) -> ClientConfig:
        """Derive the three endpoints from a server base URL.

        Example:
            config = ClientConfig.for_base_url("http://localhost:8080", "user-1")
            # config.poll_endpoint == "http://localhost:8080/realtime/poll"
        """
        base = base_url.rstrip("/")
        return cls(
            stream_endpoint=f"{base}{STREAM_PATH}",
            poll_endpoint=f"{base}{POLL_PATH}",
            health_endpoint=f"{base}{HEALTH_PATH}",
            subscriber_id=subscriber_id,
            **overrides,
        )

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> ClientConfig:
        """Build a config from ``RELAYCAST_BASE_URL`` and friends.

        Explicit keyword overrides win over environment values.
        """
        base_url = overrides.pop("base_url", None) or os.environ.get(f"{prefix}BASE_URL")
        if not base_url:
            raise ConfigurationError("client", f"{prefix}BASE_URL is not set")
        env = _env_overrides(cls, prefix)
        for endpoint in ("stream_endpoint", "poll_endpoint", "health_endpoint"):
            env.pop(endpoint, None)
        env_subscriber = env.pop("subscriber_id", None)
        subscriber_id = overrides.pop("subscriber_id", None) or env_subscriber or "anonymous"
        env.update({k: v for k, v in overrides.items() if v is not None})
        return cls.for_base_url(base_url, subscriber_id, **env)

    def monitor_config(self, base: MonitorConfig | None = None) -> MonitorConfig:
        """Monitor config carrying this client's reconnect ceiling."""
        return (base or MonitorConfig()).with_overrides(
            max_reconnect_attempts=self.max_reconnect_attempts
        )


@dataclass(frozen=True)
class ServerConfig:
    """Configuration of the event log HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080
    heartbeat_interval: float = 30.0
    max_events: int = 1000

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ConfigurationError("server", "port must be between 0 and 65535")
        if self.heartbeat_interval <= 0:
            raise ConfigurationError("server", "heartbeat_interval must be positive")
        if self.max_events < 1:
            raise ConfigurationError("server", "max_events must be at least 1")

    def with_overrides(self, **overrides: Any) -> ServerConfig:
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> ServerConfig:
        return cls(**_env_overrides(cls, prefix))


__all__ = [
    "ENV_PREFIX",
    "STREAM_PATH",
    "POLL_PATH",
    "HEALTH_PATH",
    "MonitorConfig",
    "ClientConfig",
    "ServerConfig",
]
