"""
Streaming transport: one long-lived text/event-stream response.
"""

from __future__ import annotations

import asyncio
import logging
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
from relaycast.exceptions import (
    FrameDecodeError,
    TransportError,
    TransportOpenError,
    TransportReadError,
)
from relaycast.frames import FrameDecoder, FrameKind
from relaycast.http_client import NO_CACHE_HEADERS, STREAM_TIMEOUT
from relaycast.models import Strategy

logger = logging.getLogger(__name__)

STREAM_HEADERS = {"Accept": "text/event-stream", **NO_CACHE_HEADERS}

# Exceptions aiohttp raises for a broken or unreachable connection.
# ValueError covers lines longer than the stream reader's limit.
_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


class StreamingAdapter(EventSourceAdapter):
    """
    Receives events pushed over ``GET stream_endpoint?subscriberId=&since=``.

    A non-200 response or a failure to connect is reported as
    TransportOpenError; a disconnect or EOF after the response was accepted
    is reported as TransportReadError. Either way the adapter goes
    OPEN/OPENING -> FAILED -> IDLE and the client decides what happens next.
    """

    strategy = Strategy.STREAMING

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
        self._timeout = timeout or STREAM_TIMEOUT

    async def _run(self, since: int, generation: int) -> None:
        params = {"subscriberId": self.config.subscriber_id, "since": str(since)}
        accepted = False
        try:
            async with self._session.get(
                self.config.stream_endpoint,
                params=params,
                headers=STREAM_HEADERS,
                timeout=self._timeout,
            ) as response:
                if response.status != 200:
                    raise TransportOpenError(f"HTTP {response.status}", status=response.status)
                accepted = True
                if not self._is_current(generation):
                    return
                self._transition(AdapterState.OPEN)
                self._emit_status(generation, True)
                await self._read_frames(response, generation)
            if self._is_current(generation):
                raise TransportReadError("stream closed by server")
        except asyncio.CancelledError:
            raise
        except TransportError as e:
            self._fail(generation, e)
        except _NETWORK_ERRORS as e:
            reason = f"{type(e).__name__}: {e}"
            error = TransportReadError(reason) if accepted else TransportOpenError(reason)
            self._fail(generation, error)

    async def _read_frames(self, response: aiohttp.ClientResponse, generation: int) -> None:
        decoder = FrameDecoder()
        async for raw in response.content:
            if not self._is_current(generation):
                return
            try:
                frame = decoder.feed(raw.decode("utf-8", errors="replace"))
            except FrameDecodeError as e:
                logger.warning(f"Skipping malformed frame: {e.reason}")
                self._emit_error(generation, e)
                continue
            if frame is None:
                continue
            if frame.kind is FrameKind.DATA and frame.event is not None:
                self._emit_event(generation, frame.event)
            else:
                self._emit_status(generation, True)


__all__ = ["StreamingAdapter", "STREAM_HEADERS"]
