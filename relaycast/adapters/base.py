"""
Event source adapter contract.

Exactly two implementations exist, StreamingAdapter and PollingAdapter.
The delivery client owns at most one instance at a time.

State machine::

    IDLE -> OPENING -> OPEN -> CLOSING -> IDLE
                 \\        \\
                  +-------> FAILED -> IDLE

FAILED always returns to IDLE before any retry; there is no FAILED -> OPEN
edge. Retry, backoff and fallback policy belong to the client, never to an
adapter.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, ClassVar, Optional

import aiohttp

from relaycast.config import ClientConfig
from relaycast.exceptions import AdapterStateError
from relaycast.models import Event, Strategy

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], None]
StatusCallback = Callable[[bool], None]
ErrorCallback = Callable[[Exception], None]
LatencyCallback = Callable[[float], None]


class AdapterState(str, Enum):
    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    FAILED = "failed"


_TRANSITIONS: dict[AdapterState, frozenset[AdapterState]] = {
    AdapterState.IDLE: frozenset({AdapterState.OPENING}),
    AdapterState.OPENING: frozenset(
        {AdapterState.OPEN, AdapterState.CLOSING, AdapterState.FAILED}
    ),
    AdapterState.OPEN: frozenset({AdapterState.CLOSING, AdapterState.FAILED}),
    AdapterState.CLOSING: frozenset({AdapterState.IDLE}),
    AdapterState.FAILED: frozenset({AdapterState.IDLE}),
}


class EventSourceAdapter(ABC):
    """
    Base class for transports that pull or receive events from the server.

    Subclasses implement ``_run(since, generation)``, the body of the
    background task started by open(). Everything they report goes through
    the ``_emit_*`` helpers, which drop the call when the generation it was
    issued under is no longer current. close() bumps the generation, which
    is what guarantees that no callback fires after close() returns.
    """

    strategy: ClassVar[Strategy]

    def __init__(
        self,
        config: ClientConfig,
        session: aiohttp.ClientSession,
        *,
        on_event: EventCallback,
        on_status: StatusCallback,
        on_error: ErrorCallback,
        on_latency: Optional[LatencyCallback] = None,
    ):
        self.config = config
        self._session = session
        self._on_event = on_event
        self._on_status = on_status
        self._on_error = on_error
        self._on_latency = on_latency
        self._state = AdapterState.IDLE
        self._task: asyncio.Task | None = None
        self._closed_tasks: list[asyncio.Task] = []
        self._generation = 0

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def name(self) -> str:
        return type(self).__name__

    def open(self, since: int) -> None:
        """Start the transport from watermark ``since``.

        Raises:
            AdapterStateError: Unless the adapter is IDLE.
        """
        self._transition(AdapterState.OPENING)
        self._generation += 1
        self._task = asyncio.create_task(
            self._run(since, self._generation), name=f"relaycast-{self.strategy.value}"
        )
        logger.debug(f"{self.name} task started (since={since})")

    def close(self) -> None:
        """Stop the transport. Idempotent and safe from inside a callback."""
        if self._state in (AdapterState.OPENING, AdapterState.OPEN):
            self._transition(AdapterState.CLOSING)
        self._generation += 1
        task, self._task = self._task, None
        if task is not None:
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
            self._closed_tasks.append(task)
        if self._state is AdapterState.CLOSING:
            self._transition(AdapterState.IDLE)

    async def wait_closed(self) -> None:
        """Wait for tasks stopped by close() to finish unwinding."""
        current = asyncio.current_task()
        tasks = [t for t in self._closed_tasks if t is not current]
        self._closed_tasks = []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @abstractmethod
    async def _run(self, since: int, generation: int) -> None:
        """Background task body."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _transition(self, target: AdapterState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise AdapterStateError(self.name, self._state.value, target.value)
        logger.debug(f"{self.name}: {self._state.value} -> {target.value}")
        self._state = target

    def _fail(self, generation: int, error: Exception) -> None:
        """Move through FAILED back to IDLE and report the failure."""
        if not self._is_current(generation):
            return
        logger.warning(f"{self.name} failed: {error}")
        self._transition(AdapterState.FAILED)
        self._task = None
        self._transition(AdapterState.IDLE)
        self._emit_status(generation, False)
        self._emit_error(generation, error)

    def _emit_event(self, generation: int, event: Event) -> None:
        if self._is_current(generation):
            self._guarded(self._on_event, event)

    def _emit_status(self, generation: int, connected: bool) -> None:
        if self._is_current(generation):
            self._guarded(self._on_status, connected)

    def _emit_error(self, generation: int, error: Exception) -> None:
        if self._is_current(generation):
            self._guarded(self._on_error, error)

    def _emit_latency(self, generation: int, latency_ms: float) -> None:
        if self._on_latency is not None and self._is_current(generation):
            self._guarded(self._on_latency, latency_ms)

    def _guarded(self, callback: Callable, arg) -> None:
        try:
            callback(arg)
        except Exception:
            logger.exception(f"{self.name} callback {getattr(callback, '__name__', callback)} raised")


__all__ = [
    "AdapterState",
    "EventSourceAdapter",
    "EventCallback",
    "StatusCallback",
    "ErrorCallback",
    "LatencyCallback",
]
