"""
Registry of open streaming connections, keyed by subscriber.

The server registers every streaming response it holds open so it can
report connection counts, list a subscriber's connections, disconnect a
subscriber on request, and prune connections that stopped making progress
(a write that never completes leaves ``last_activity`` behind).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from relaycast.health import now_ms

logger = logging.getLogger(__name__)


@dataclass
class StreamConnection:
    """One open streaming response."""

    id: str
    subscriber_id: str
    connected_at: int  # ms since epoch
    last_activity: int
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    frames_sent: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subscriberId": self.subscriber_id,
            "connectedAt": self.connected_at,
            "lastActivity": self.last_activity,
            "framesSent": self.frames_sent,
        }


class ConnectionRegistry:
    """
    Open connections grouped by subscriber.

    Closing a connection cancels the task serving it; the handler's own
    ``unregister`` in its ``finally`` block is then a no-op.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._by_subscriber: dict[str, dict[str, StreamConnection]] = {}

    def __len__(self) -> int:
        return sum(len(conns) for conns in self._by_subscriber.values())

    def register(self, subscriber_id: str, task: Optional[asyncio.Task] = None) -> StreamConnection:
        now = self._clock()
        connection = StreamConnection(
            id=f"conn_{uuid.uuid4().hex[:12]}",
            subscriber_id=subscriber_id,
            connected_at=now,
            last_activity=now,
            task=task,
        )
        self._by_subscriber.setdefault(subscriber_id, {})[connection.id] = connection
        logger.debug(f"Connection {connection.id} registered for {subscriber_id} (total={len(self)})")
        return connection

    def unregister(self, connection: StreamConnection) -> bool:
        """Forget ``connection``. Returns False if it was already gone."""
        conns = self._by_subscriber.get(connection.subscriber_id)
        if conns is None or conns.pop(connection.id, None) is None:
            return False
        if not conns:
            del self._by_subscriber[connection.subscriber_id]
        logger.debug(f"Connection {connection.id} unregistered (total={len(self)})")
        return True

    def touch(self, connection: StreamConnection) -> None:
        """Record a completed write."""
        connection.last_activity = self._clock()
        connection.frames_sent += 1

    def get_subscriber_connections(self, subscriber_id: str) -> list[StreamConnection]:
        return list(self._by_subscriber.get(subscriber_id, {}).values())

    def disconnect_subscriber(self, subscriber_id: str) -> int:
        """Close every connection of ``subscriber_id``. Returns how many."""
        closed = self._close(self.get_subscriber_connections(subscriber_id))
        if closed:
            logger.info(f"Disconnected {closed} connection(s) of {subscriber_id}")
        return closed

    def cleanup_stale(self, max_idle_ms: int) -> int:
        """Close connections with no completed write for ``max_idle_ms``."""
        cutoff = self._clock() - max_idle_ms
        stale = [
            conn
            for conns in self._by_subscriber.values()
            for conn in conns.values()
            if conn.last_activity < cutoff
        ]
        closed = self._close(stale)
        if closed:
            logger.info(f"Cleaned up {closed} stale connection(s), {len(self)} remaining")
        return closed

    def close_all(self) -> int:
        return self._close([c for conns in self._by_subscriber.values() for c in conns.values()])

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self),
            "subscribers": len(self._by_subscriber),
            "connections_by_subscriber": {
                sub: len(conns) for sub, conns in self._by_subscriber.items()
            },
        }

    def _close(self, connections: list[StreamConnection]) -> int:
        for connection in connections:
            self.unregister(connection)
            if connection.task is not None and not connection.task.done():
                connection.task.cancel()
        return len(connections)


__all__ = ["StreamConnection", "ConnectionRegistry"]
