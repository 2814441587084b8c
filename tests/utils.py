"""
Shared test helpers: scripted adapters and polling waits.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from relaycast.adapters.base import AdapterState, EventSourceAdapter
from relaycast.exceptions import TransportOpenError
from relaycast.models import Event, Strategy

Script = Callable[["FakeAdapter", int], Awaitable[None]]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


async def settle(rounds: int = 20) -> None:
    """Let pending callbacks and zero-delay tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_event(event_id: str, timestamp: int, event_type: str = "order.created", payload=None) -> Event:
    return Event(id=event_id, type=event_type, payload=payload or {}, timestamp=timestamp)


class FakeAdapter(EventSourceAdapter):
    """Adapter driven by the test instead of the network.

    An optional ``script`` runs when the background task starts. Unless the
    script failed the adapter, the task then stays parked until close().
    """

    strategy = Strategy.STREAMING

    def __init__(self, config, session, *, script: Optional[Script] = None, **callbacks):
        super().__init__(config, session, **callbacks)
        self.script = script
        self.opened_since: list[int] = []

    def open(self, since: int) -> None:
        self.opened_since.append(since)
        super().open(since)

    async def _run(self, since: int, generation: int) -> None:
        if self.script is not None:
            await self.script(self, generation)
        if self._is_current(generation) and self.state is not AdapterState.IDLE:
            await asyncio.Event().wait()

    # Test controls

    def accept(self) -> None:
        self._transition(AdapterState.OPEN)
        self._emit_status(self._generation, True)

    def deliver(self, *events: Event) -> None:
        for event in events:
            self._emit_event(self._generation, event)

    def report_status(self, connected: bool) -> None:
        self._emit_status(self._generation, connected)

    def report_latency(self, latency_ms: float) -> None:
        self._emit_latency(self._generation, latency_ms)

    def fail(self, error: Exception) -> None:
        self._fail(self._generation, error)


class FakeStreamingAdapter(FakeAdapter):
    strategy = Strategy.STREAMING


class FakePollingAdapter(FakeAdapter):
    strategy = Strategy.POLLING


async def fail_open(adapter: FakeAdapter, generation: int) -> None:
    adapter.fail(TransportOpenError("HTTP 503", status=503))


async def accept_open(adapter: FakeAdapter, generation: int) -> None:
    adapter.accept()


class AdapterRecorder:
    """Adapter factories that remember every adapter they built."""

    def __init__(
        self,
        streaming_script: Optional[Script] = None,
        polling_script: Optional[Script] = None,
    ):
        self.streaming_script = streaming_script
        self.polling_script = polling_script
        self.created: list[FakeAdapter] = []

    def factories(self) -> dict[Strategy, Callable[..., EventSourceAdapter]]:
        return {
            Strategy.STREAMING: self._factory(FakeStreamingAdapter, lambda: self.streaming_script),
            Strategy.POLLING: self._factory(FakePollingAdapter, lambda: self.polling_script),
        }

    def _factory(self, cls, script_getter):
        def build(config, session, **callbacks):
            adapter = cls(config, session, script=script_getter(), **callbacks)
            self.created.append(adapter)
            return adapter

        return build

    def of(self, strategy: Strategy) -> list[FakeAdapter]:
        return [a for a in self.created if a.strategy is strategy]

    @property
    def latest(self) -> FakeAdapter:
        return self.created[-1]


class CallbackRecorder:
    """Collects everything an adapter reports."""

    def __init__(self):
        self.events: list[Event] = []
        self.statuses: list[bool] = []
        self.errors: list[Exception] = []
        self.latencies: list[float] = []

    def callbacks(self) -> dict:
        return {
            "on_event": self.events.append,
            "on_status": self.statuses.append,
            "on_error": self.errors.append,
            "on_latency": self.latencies.append,
        }

    @property
    def event_ids(self) -> list[str]:
        return [e.id for e in self.events]
