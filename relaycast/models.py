"""
Core data types shared by the client, the adapters and the event log.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from relaycast.exceptions import FrameDecodeError

WILDCARD = "*"


class Strategy(str, Enum):
    """Which event source adapter is active.

    Inherits from ``str`` so values compare equal to their wire names::

        assert Strategy.STREAMING == "streaming"
    """

    STREAMING = "streaming"
    POLLING = "polling"


@dataclass(frozen=True)
class Event:
    """A server-originated event.

    Attributes:
        id: Server-assigned identifier, used for idempotence.
        type: Event type used to route to handlers.
        payload: Opaque JSON value.
        timestamp: Milliseconds since the epoch; the ordering key.
    """

    id: str
    type: str
    payload: Any
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        """Build an Event from its decoded JSON form.

        Raises:
            FrameDecodeError: If the object is not a well-formed event.
        """
        if not isinstance(data, dict):
            raise FrameDecodeError(f"expected object, got {type(data).__name__}")
        missing = [k for k in ("id", "type", "timestamp") if k not in data]
        if missing:
            raise FrameDecodeError(f"missing fields: {', '.join(missing)}")
        timestamp = data["timestamp"]
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise FrameDecodeError(f"timestamp must be an integer, got {timestamp!r}")
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            payload=data.get("payload"),
            timestamp=timestamp,
        )


@dataclass
class ConnectionHealth:
    """Connectivity state tracked by the health monitor.

    Only the monitor mutates instances; everyone else receives copies.
    """

    connected: bool = False
    last_heartbeat_at: int = 0  # ms since epoch
    reconnect_attempts: int = 0
    latency_ms: float = 0.0
    strategy: Strategy = Strategy.STREAMING

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "last_heartbeat_at": self.last_heartbeat_at,
            "reconnect_attempts": self.reconnect_attempts,
            "latency_ms": self.latency_ms,
            "strategy": self.strategy.value,
        }


__all__ = ["WILDCARD", "Strategy", "Event", "ConnectionHealth"]
