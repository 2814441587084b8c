"""
relaycast: resilient real-time event delivery.

A client that keeps a subscriber's event stream flowing across network
trouble, and the small server it talks to:

- DeliveryClient prefers a long-lived streaming connection, falls back to
  polling when the link degrades, and upgrades back once it recovers. A
  watermark (highest delivered timestamp) makes every switch gap-free.
- HealthMonitor tracks connectivity with heartbeat staleness detection and
  an active health check, and owns backoff and fallback policy.
- EventLog and create_app serve events over /realtime/stream and
  /realtime/poll with aiohttp.

Public symbols are imported lazily.
"""

from __future__ import annotations

import importlib
from typing import Any

from relaycast.__version__ import __version__

_EXPORT_MAP = {
    'AdapterState': ('relaycast.adapters', 'AdapterState'),
    'AdapterStateError': ('relaycast.exceptions', 'AdapterStateError'),
    'ClientConfig': ('relaycast.config', 'ClientConfig'),
    'ConfigurationError': ('relaycast.exceptions', 'ConfigurationError'),
    'ConnectionHealth': ('relaycast.models', 'ConnectionHealth'),
    'ConnectionRegistry': ('relaycast.connections', 'ConnectionRegistry'),
    'DeliveryClient': ('relaycast.client', 'DeliveryClient'),
    'Event': ('relaycast.models', 'Event'),
    'EventLog': ('relaycast.event_log', 'EventLog'),
    'EventSourceAdapter': ('relaycast.adapters', 'EventSourceAdapter'),
    'FrameDecodeError': ('relaycast.exceptions', 'FrameDecodeError'),
    'HandlerError': ('relaycast.exceptions', 'HandlerError'),
    'HealthMonitor': ('relaycast.health', 'HealthMonitor'),
    'MonitorConfig': ('relaycast.config', 'MonitorConfig'),
    'PollRequestError': ('relaycast.exceptions', 'PollRequestError'),
    'PollingAdapter': ('relaycast.adapters', 'PollingAdapter'),
    'ReconnectExhaustedError': ('relaycast.exceptions', 'ReconnectExhaustedError'),
    'RelaycastError': ('relaycast.exceptions', 'RelaycastError'),
    'ServerConfig': ('relaycast.config', 'ServerConfig'),
    'Strategy': ('relaycast.models', 'Strategy'),
    'StreamingAdapter': ('relaycast.adapters', 'StreamingAdapter'),
    'TransportError': ('relaycast.exceptions', 'TransportError'),
    'TransportOpenError': ('relaycast.exceptions', 'TransportOpenError'),
    'TransportReadError': ('relaycast.exceptions', 'TransportReadError'),
    'configure_logging': ('relaycast.logging_config', 'configure_logging'),
    'create_app': ('relaycast.server', 'create_app'),
}


def __getattr__(name: str) -> Any:
    """Lazily import public symbols to avoid heavy import side effects."""
    try:
        module_name, attr_name = _EXPORT_MAP[name]
    except KeyError as exc:
        raise AttributeError(f"module 'relaycast' has no attribute {name!r}") from exc
    module = importlib.import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))


__all__ = [
    "__version__",
    # Client
    "DeliveryClient",
    "ClientConfig",
    "HealthMonitor",
    "MonitorConfig",
    "ConnectionHealth",
    "Strategy",
    "Event",
    # Transports
    "EventSourceAdapter",
    "AdapterState",
    "StreamingAdapter",
    "PollingAdapter",
    # Server
    "EventLog",
    "ConnectionRegistry",
    "ServerConfig",
    "create_app",
    # Errors
    "RelaycastError",
    "ConfigurationError",
    "TransportError",
    "TransportOpenError",
    "TransportReadError",
    "PollRequestError",
    "FrameDecodeError",
    "AdapterStateError",
    "HandlerError",
    "ReconnectExhaustedError",
    # Logging
    "configure_logging",
]
