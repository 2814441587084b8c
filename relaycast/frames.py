"""
Stream framing for the streaming endpoint.

The stream uses text/event-stream framing: a frame is a run of
``field: value`` lines terminated by a blank line. Three frame kinds exist:

    event: connected            acknowledgment, sent once on open
    data: {"subscriberId": ..., "timestamp": ...}

    event: heartbeat            liveness only, every heartbeat interval
    data: {"timestamp": ...}

    id: <event id>              one Event per data frame
    data: {"id": ..., "type": ..., "payload": ..., "timestamp": ...}

Lines starting with ``:`` are comments and ignored. A frame without an
``event:`` field is a data frame.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from relaycast.exceptions import FrameDecodeError
from relaycast.models import Event


class FrameKind(str, Enum):
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    DATA = "data"


@dataclass(frozen=True)
class Frame:
    """A decoded stream frame. ``event`` is set for data frames only."""

    kind: FrameKind
    data: str = ""
    event: Optional[Event] = None


class FrameDecoder:
    """Incremental line-oriented frame decoder.

    Feed it one line at a time; it returns a Frame when a blank line
    completes one, otherwise None.

    Usage:
        decoder = FrameDecoder()
        async for raw in response.content:
            frame = decoder.feed(raw.decode("utf-8"))
            if frame is not None:
                handle(frame)
    """

    def __init__(self) -> None:
        self._event_name: str | None = None
        self._data_lines: list[str] = []

    def reset(self) -> None:
        self._event_name = None
        self._data_lines = []

    def feed(self, line: str) -> Frame | None:
        """Consume one line.

        Raises:
            FrameDecodeError: When a completed frame is malformed. The
                decoder is reset first, so decoding can continue.
        """
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event_name = value
        elif name == "data":
            self._data_lines.append(value)
        # "id" and "retry" carry nothing the event body does not already have
        return None

    def _dispatch(self) -> Frame | None:
        event_name = self._event_name
        data = "\n".join(self._data_lines)
        self.reset()

        if event_name is None and not data:
            return None
        if event_name == FrameKind.HEARTBEAT.value:
            return Frame(FrameKind.HEARTBEAT, data)
        if event_name == FrameKind.CONNECTED.value:
            return Frame(FrameKind.CONNECTED, data)
        if event_name not in (None, "message"):
            raise FrameDecodeError(f"unknown frame kind '{event_name}'", data)

        try:
            body = json.loads(data)
        except json.JSONDecodeError as e:
            raise FrameDecodeError(f"invalid JSON: {e.msg}", data) from e
        try:
            event = Event.from_dict(body)
        except FrameDecodeError as e:
            raise FrameDecodeError(e.reason, data) from e
        return Frame(FrameKind.DATA, data, event)


def _encode(event_name: str | None, body: Any, event_id: str | None = None) -> str:
    lines = []
    if event_name:
        lines.append(f"event: {event_name}")
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(body, separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


def encode_event_frame(event: Event) -> str:
    return _encode(None, event.to_dict(), event.id)


def encode_heartbeat_frame(timestamp: int) -> str:
    return _encode(FrameKind.HEARTBEAT.value, {"timestamp": timestamp})


def encode_connected_frame(subscriber_id: str, timestamp: int) -> str:
    return _encode(
        FrameKind.CONNECTED.value,
        {"status": "connected", "subscriberId": subscriber_id, "timestamp": timestamp},
    )


__all__ = [
    "FrameKind",
    "Frame",
    "FrameDecoder",
    "encode_event_frame",
    "encode_heartbeat_frame",
    "encode_connected_frame",
]
