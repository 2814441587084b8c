"""
Polling transport: periodic ``GET poll_endpoint`` requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import aiohttp
from aiohttp import ClientTimeout

from relaycast.adapters.base import (
    AdapterState,
    ErrorCallback,
    EventCallback,
    EventSourceAdapter,
    LatencyCallback,
    StatusCallback,
)
from relaycast.config import ClientConfig
from relaycast.exceptions import FrameDecodeError, PollRequestError
from relaycast.http_client import NO_CACHE_HEADERS, POLL_TIMEOUT
from relaycast.models import Event, Strategy

logger = logging.getLogger(__name__)


class PollingAdapter(EventSourceAdapter):
    """
    Pulls events with one request at a time.

    The loop is request, emit, sleep ``poll_interval``, repeat; the next
    request is never issued before the previous one finished, so at most one
    is ever in flight. The adapter keeps its own cursor (the highest
    timestamp it has emitted) and starts it at the ``since`` passed to
    open(), so it never reads client state.

    A failed poll is reported as ``on_status(False)`` plus
    ``on_error(PollRequestError)``; the loop keeps going.
    """

    strategy = Strategy.POLLING

    def __init__(
        self,
        config: ClientConfig,
        session: aiohttp.ClientSession,
        *,
        on_event: EventCallback,
        on_status: StatusCallback,
        on_error: ErrorCallback,
        on_latency: Optional[LatencyCallback] = None,
        timeout: ClientTimeout | None = None,
    ):
        super().__init__(
            config,
            session,
            on_event=on_event,
            on_status=on_status,
            on_error=on_error,
            on_latency=on_latency,
        )
        self._timeout = timeout or POLL_TIMEOUT
        self._cursor = 0
        self._in_flight = False

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def _run(self, since: int, generation: int) -> None:
        self._cursor = since
        while self._is_current(generation):
            await self.poll_once(generation)
            if not self._is_current(generation):
                return
            await asyncio.sleep(self.config.poll_interval)

    async def poll_once(self, generation: int) -> bool:
        """Issue one request and emit what it returns.

        Returns:
            True if the request succeeded.
        """
        if self._in_flight:
            return False
        self._in_flight = True
        start = time.monotonic()
        try:
            events = await self._fetch()
        except asyncio.CancelledError:
            raise
        except PollRequestError as e:
            self._report_failure(generation, e)
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            self._report_failure(generation, PollRequestError(f"{type(e).__name__}: {e}"))
            return False
        finally:
            self._in_flight = False
        rtt_ms = (time.monotonic() - start) * 1000

        for event in events:
            if not self._is_current(generation):
                return False
            if event.timestamp > self._cursor:
                self._cursor = event.timestamp
            self._emit_event(generation, event)

        if not self._is_current(generation):
            return False
        if self._state is AdapterState.OPENING:
            self._transition(AdapterState.OPEN)
        self._emit_latency(generation, rtt_ms)
        self._emit_status(generation, True)
        return True

    async def _fetch(self) -> list[Event]:
        params = {
            "subscriberId": self.config.subscriber_id,
            "since": str(self._cursor),
            "limit": str(self.config.poll_limit),
        }
        async with self._session.get(
            self.config.poll_endpoint,
            params=params,
            headers=NO_CACHE_HEADERS,
            timeout=self._timeout,
        ) as response:
            if response.status != 200:
                raise PollRequestError(f"HTTP {response.status}", status=response.status)
            body = await response.json(content_type=None)

        if not isinstance(body, list):
            raise PollRequestError(f"expected a JSON array, got {type(body).__name__}")
        try:
            return [Event.from_dict(item) for item in body]
        except FrameDecodeError as e:
            raise PollRequestError(f"malformed event in response: {e.reason}") from e

    def _report_failure(self, generation: int, error: PollRequestError) -> None:
        if not self._is_current(generation):
            return
        logger.warning(f"Poll failed: {error}")
        self._emit_status(generation, False)
        self._emit_error(generation, error)


__all__ = ["PollingAdapter"]
