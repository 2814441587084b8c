"""
In-memory, bounded, per-subscriber event log.

The server side of event delivery. Timestamps are assigned here and are
strictly increasing per log (``max(now_ms, last + 1)``), so the client's
watermark never skips an event that shares a millisecond with another.
Only the newest ``max_events`` events are kept.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

from relaycast.health import now_ms
from relaycast.models import Event

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 1000
RECENT_WINDOW_MS = 60 * 60 * 1000  # one hour, for get_stats()


class EventLog:
    """
    Append-only event log keyed by subscriber.

    Events are stored in append order, which is also ascending timestamp
    order. ``wait_for_events`` lets streaming handlers sleep until something
    new is appended instead of polling the log.
    """

    def __init__(
        self,
        max_events: int = DEFAULT_MAX_EVENTS,
        clock: Callable[[], int] = now_ms,
    ):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.max_events = max_events
        self._clock = clock
        self._entries: list[tuple[str, Event]] = []
        self._last_timestamp = 0
        self._appended = asyncio.Event()
        logger.info(f"Event log initialized (max_events={max_events})")

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_event(self, subscriber_id: str, event_type: str, payload: Any = None) -> Event:
        """Append an event for ``subscriber_id`` and return it.

        The log assigns the id and a timestamp greater than every timestamp
        it handed out before.
        """
        timestamp = max(self._clock(), self._last_timestamp + 1)
        self._last_timestamp = timestamp
        event = Event(
            id=f"evt_{timestamp}_{uuid.uuid4().hex[:9]}",
            type=event_type,
            payload=payload,
            timestamp=timestamp,
        )
        self._entries.append((subscriber_id, event))
        if len(self._entries) > self.max_events:
            dropped = len(self._entries) - self.max_events
            del self._entries[:dropped]
            logger.debug(f"Event log full, dropped {dropped} oldest event(s)")

        logger.debug(f"Event {event.id} ({event_type}) added for {subscriber_id}")
        self._appended.set()
        self._appended = asyncio.Event()
        return event

    def clear_events(self, subscriber_id: str) -> int:
        """Remove every event of one subscriber. Returns the number removed."""
        before = len(self._entries)
        self._entries = [(s, e) for s, e in self._entries if s != subscriber_id]
        cleared = before - len(self._entries)
        logger.info(f"Cleared {cleared} event(s) for {subscriber_id}")
        return cleared

    def clear_all(self) -> int:
        cleared = len(self._entries)
        self._entries = []
        logger.info(f"Cleared all {cleared} event(s)")
        return cleared

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_events_since(self, subscriber_id: str, since: int) -> list[Event]:
        """Events of ``subscriber_id`` with ``timestamp > since``, oldest first."""
        return [e for s, e in self._entries if s == subscriber_id and e.timestamp > since]

    def get_latest_events(self, subscriber_id: str, limit: int = 50) -> list[Event]:
        """The newest ``limit`` events of ``subscriber_id``, newest first."""
        events = [e for s, e in reversed(self._entries) if s == subscriber_id]
        return events[:limit]

    def get_event(self, event_id: str) -> Optional[Event]:
        for _, event in self._entries:
            if event.id == event_id:
                return event
        return None

    def get_events(
        self,
        subscriber_id: str | None = None,
        event_type: str | None = None,
        since: int | None = None,
        until: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Event]:
        """Filtered, paginated query, newest first.

        Args:
            subscriber_id: Only events of this subscriber.
            event_type: Only events of this type.
            since: Only events with ``timestamp >= since``.
            until: Only events with ``timestamp <= until``.
            limit: Page size.
            offset: Number of matching events to skip.
        """
        matched = []
        for owner, event in reversed(self._entries):
            if subscriber_id is not None and owner != subscriber_id:
                continue
            if event_type is not None and event.type != event_type:
                continue
            if since is not None and event.timestamp < since:
                continue
            if until is not None and event.timestamp > until:
                continue
            matched.append(event)
        return matched[offset : offset + limit]

    def get_stats(self) -> dict[str, Any]:
        """Counts in total, by type, by subscriber, and within the last hour."""
        by_type: dict[str, int] = {}
        by_subscriber: dict[str, int] = {}
        cutoff = self._clock() - RECENT_WINDOW_MS
        recent = 0
        for owner, event in self._entries:
            by_type[event.type] = by_type.get(event.type, 0) + 1
            by_subscriber[owner] = by_subscriber.get(owner, 0) + 1
            if event.timestamp > cutoff:
                recent += 1
        return {
            "total_events": len(self._entries),
            "max_events": self.max_events,
            "events_by_type": by_type,
            "events_by_subscriber": by_subscriber,
            "recent_events": recent,
        }

    async def wait_for_events(
        self,
        subscriber_id: str,
        since: int,
        timeout: float | None = None,
    ) -> list[Event]:
        """Wait until ``subscriber_id`` has events newer than ``since``.

        Returns:
            The events (oldest first), or an empty list on timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            events = self.get_events_since(subscriber_id, since)
            if events:
                return events
            appended = self._appended
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return []
            try:
                await asyncio.wait_for(appended.wait(), remaining)
            except asyncio.TimeoutError:
                return []


__all__ = ["EventLog", "DEFAULT_MAX_EVENTS"]
