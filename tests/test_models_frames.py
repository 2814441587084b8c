"""
Tests for the event model and stream framing.

Tests cover:
- Event decoding and validation
- Frame decoding of connected, heartbeat and data frames
- Malformed frame reporting and decoder recovery
- Encoders producing frames the decoder accepts
"""

import json

import pytest

from relaycast.exceptions import FrameDecodeError, TransportError
from relaycast.frames import (
    FrameDecoder,
    FrameKind,
    encode_connected_frame,
    encode_event_frame,
    encode_heartbeat_frame,
)
from relaycast.models import ConnectionHealth, Event, Strategy


def feed_text(decoder: FrameDecoder, text: str):
    """Feed a block of stream text line by line, collecting frames."""
    frames = []
    for line in text.splitlines(keepends=True):
        frame = decoder.feed(line)
        if frame is not None:
            frames.append(frame)
    return frames


class TestEvent:
    """Tests for Event.from_dict / to_dict."""

    def test_from_dict(self):
        event = Event.from_dict(
            {"id": "e1", "type": "order.created", "payload": {"n": 1}, "timestamp": 1000}
        )
        assert event == Event("e1", "order.created", {"n": 1}, 1000)

    def test_payload_is_optional(self):
        event = Event.from_dict({"id": "e1", "type": "ping", "timestamp": 5})
        assert event.payload is None

    def test_to_dict_is_wire_form(self):
        event = Event("e1", "t", [1, 2], 7)
        assert event.to_dict() == {"id": "e1", "type": "t", "payload": [1, 2], "timestamp": 7}

    def test_rejects_non_object(self):
        with pytest.raises(FrameDecodeError, match="expected object"):
            Event.from_dict(["e1"])

    def test_rejects_missing_fields(self):
        with pytest.raises(FrameDecodeError) as exc_info:
            Event.from_dict({"id": "e1"})
        assert "type" in exc_info.value.reason
        assert "timestamp" in exc_info.value.reason

    @pytest.mark.parametrize("timestamp", ["1000", 1000.5, None, True])
    def test_rejects_non_integer_timestamp(self, timestamp):
        with pytest.raises(FrameDecodeError, match="timestamp"):
            Event.from_dict({"id": "e1", "type": "t", "timestamp": timestamp})

    def test_events_are_immutable(self):
        event = Event("e1", "t", None, 1)
        with pytest.raises(AttributeError):
            event.timestamp = 2


class TestConnectionHealth:
    """Tests for ConnectionHealth defaults."""

    def test_initial_state(self):
        health = ConnectionHealth()
        assert health.connected is False
        assert health.reconnect_attempts == 0
        assert health.latency_ms == 0.0
        assert health.strategy is Strategy.STREAMING

    def test_to_dict_uses_strategy_value(self):
        health = ConnectionHealth(connected=True, strategy=Strategy.POLLING)
        assert health.to_dict()["strategy"] == "polling"

    def test_strategy_compares_to_wire_name(self):
        assert Strategy.STREAMING == "streaming"
        assert Strategy("polling") is Strategy.POLLING


class TestFrameDecoder:
    """Tests for FrameDecoder."""

    def test_data_frame_yields_event(self):
        decoder = FrameDecoder()
        frames = feed_text(
            decoder,
            'id: e1\ndata: {"id":"e1","type":"t","payload":{},"timestamp":10}\n\n',
        )
        assert len(frames) == 1
        assert frames[0].kind is FrameKind.DATA
        assert frames[0].event == Event("e1", "t", {}, 10)

    def test_heartbeat_frame(self):
        frames = feed_text(FrameDecoder(), 'event: heartbeat\ndata: {"timestamp":1}\n\n')
        assert [f.kind for f in frames] == [FrameKind.HEARTBEAT]
        assert frames[0].event is None

    def test_connected_frame_is_not_an_event(self):
        frames = feed_text(
            FrameDecoder(),
            'event: connected\ndata: {"status":"connected","timestamp":99}\n\n',
        )
        assert frames[0].kind is FrameKind.CONNECTED
        assert frames[0].event is None

    def test_comments_and_blank_runs_are_ignored(self):
        frames = feed_text(FrameDecoder(), ": keep-alive\n\n\n")
        assert frames == []

    def test_crlf_line_endings(self):
        frames = feed_text(
            FrameDecoder(),
            'data: {"id":"e1","type":"t","timestamp":1}\r\n\r\n',
        )
        assert frames[0].event.id == "e1"

    def test_multiline_data_is_joined(self):
        text = 'data: {"id":"e1","type":"t",\ndata: "timestamp":3}\n\n'
        frames = feed_text(FrameDecoder(), text)
        assert frames[0].event.timestamp == 3

    def test_invalid_json_raises(self):
        decoder = FrameDecoder()
        with pytest.raises(FrameDecodeError, match="invalid JSON") as exc_info:
            feed_text(decoder, "data: {not json\n\n")
        assert exc_info.value.raw == "{not json"

    def test_invalid_event_body_raises_with_raw(self):
        with pytest.raises(FrameDecodeError) as exc_info:
            feed_text(FrameDecoder(), 'data: {"id":"e1"}\n\n')
        assert exc_info.value.raw == '{"id":"e1"}'
        assert "missing fields" in exc_info.value.reason

    def test_unknown_frame_kind_raises(self):
        with pytest.raises(FrameDecodeError, match="unknown frame kind"):
            feed_text(FrameDecoder(), "event: surprise\ndata: {}\n\n")

    def test_decoder_recovers_after_malformed_frame(self):
        decoder = FrameDecoder()
        with pytest.raises(FrameDecodeError):
            feed_text(decoder, "data: garbage\n\n")
        frames = feed_text(decoder, 'data: {"id":"e2","type":"t","timestamp":2}\n\n')
        assert frames[0].event.id == "e2"

    def test_decode_error_is_a_transport_error(self):
        error = FrameDecodeError("bad")
        assert isinstance(error, TransportError)
        assert error.strategy == "streaming"
        assert error.recoverable is True


class TestEncoders:
    """Tests for frame encoders."""

    def test_event_frame_round_trips_through_decoder(self):
        event = Event("e1", "order.created", {"total": 12.5}, 1234)
        frames = feed_text(FrameDecoder(), encode_event_frame(event))
        assert frames[0].event == event

    def test_event_frame_carries_id_line(self):
        text = encode_event_frame(Event("e9", "t", None, 1))
        assert text.splitlines()[0] == "id: e9"
        assert text.endswith("\n\n")

    def test_heartbeat_frame(self):
        text = encode_heartbeat_frame(555)
        assert text.startswith("event: heartbeat\n")
        data_line = text.splitlines()[1]
        assert json.loads(data_line[len("data: "):]) == {"timestamp": 555}

    def test_connected_frame(self):
        frames = feed_text(FrameDecoder(), encode_connected_frame("user-1", 42))
        assert frames[0].kind is FrameKind.CONNECTED
        assert json.loads(frames[0].data)["subscriberId"] == "user-1"
