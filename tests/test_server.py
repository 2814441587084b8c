"""
Tests for the event log HTTP server.

Requests go through a real aiohttp session to the in-process server.
"""

import asyncio

import aiohttp
import pytest

from relaycast.connections import ConnectionRegistry
from relaycast.frames import FrameDecoder, FrameKind
from relaycast.server import CONNECTIONS_KEY, EVENT_LOG_KEY, MAX_POLL_LIMIT, create_app
from tests.utils import wait_until

pytestmark = pytest.mark.integration


@pytest.fixture
def url(relay_server):
    return lambda path: str(relay_server.make_url(path))


async def _read_frames(response, count: int, timeout: float = 2.0):
    decoder = FrameDecoder()
    frames = []

    async def read():
        async for raw in response.content:
            frame = decoder.feed(raw.decode("utf-8"))
            if frame is not None:
                frames.append(frame)
                if len(frames) == count:
                    return

    await asyncio.wait_for(read(), timeout)
    return frames


async def _read_until_heartbeats(response, heartbeats: int, timeout: float = 2.0):
    """Read frames until ``heartbeats`` heartbeat frames have arrived."""
    decoder = FrameDecoder()
    frames = []

    async def read():
        seen = 0
        async for raw in response.content:
            frame = decoder.feed(raw.decode("utf-8"))
            if frame is None:
                continue
            frames.append(frame)
            if frame.kind is FrameKind.HEARTBEAT:
                seen += 1
                if seen == heartbeats:
                    return

    await asyncio.wait_for(read(), timeout)
    return frames


async def _read_to_end(response, timeout: float = 2.0) -> None:
    """Read until the server closes the stream."""

    async def read():
        try:
            async for _ in response.content:
                pass
        except (aiohttp.ClientPayloadError, aiohttp.ServerDisconnectedError):
            pass

    await asyncio.wait_for(read(), timeout)


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, http_session, url):
        async with http_session.get(url("/health")) as response:
            assert response.status == 200
            assert "no-store" in response.headers["Cache-Control"]
            body = await response.json()
        assert body["status"] == "ok"
        assert isinstance(body["timestamp"], int)


class TestPoll:
    """GET /realtime/poll"""

    @pytest.mark.asyncio
    async def test_since_returns_oldest_first(self, http_session, url, event_log):
        events = [event_log.add_event("user-1", "t", i) for i in range(4)]
        event_log.add_event("user-2", "t", 99)
        params = {"subscriberId": "user-1", "since": str(events[0].timestamp), "limit": "2"}
        async with http_session.get(url("/realtime/poll"), params=params) as response:
            assert response.status == 200
            assert response.headers["Pragma"] == "no-cache"
            body = await response.json()
        assert [e["id"] for e in body] == [events[1].id, events[2].id]

    @pytest.mark.asyncio
    async def test_without_since_returns_latest_first(self, http_session, url, event_log):
        events = [event_log.add_event("user-1", "t", i) for i in range(3)]
        params = {"subscriberId": "user-1", "limit": "2"}
        async with http_session.get(url("/realtime/poll"), params=params) as response:
            body = await response.json()
        assert [e["id"] for e in body] == [events[2].id, events[1].id]

    @pytest.mark.asyncio
    async def test_empty_result_is_empty_array(self, http_session, url):
        params = {"subscriberId": "nobody", "since": "0"}
        async with http_session.get(url("/realtime/poll"), params=params) as response:
            assert response.status == 200
            assert await response.json() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{"since": "abc"}, {"since": "-1"}, {"limit": "0"}])
    async def test_bad_query_is_400(self, http_session, url, params):
        async with http_session.get(url("/realtime/poll"), params=params) as response:
            assert response.status == 400
            assert "error" in await response.json()

    @pytest.mark.asyncio
    async def test_limit_is_capped(self, http_session, relay_server, event_log):
        event_log.max_events = MAX_POLL_LIMIT + 10
        for i in range(MAX_POLL_LIMIT + 5):
            event_log.add_event("user-1", "t", i)
        params = {"subscriberId": "user-1", "since": "0", "limit": str(MAX_POLL_LIMIT * 2)}
        async with http_session.get(relay_server.make_url("/realtime/poll"), params=params) as response:
            body = await response.json()
        assert len(body) == MAX_POLL_LIMIT


class TestStream:
    """GET /realtime/stream"""

    @pytest.mark.asyncio
    async def test_ack_backlog_live_and_heartbeat(self, http_session, url, event_log):
        old = event_log.add_event("user-1", "t", "old")
        backlog = event_log.add_event("user-1", "t", "backlog")
        params = {"subscriberId": "user-1", "since": str(old.timestamp)}

        async with http_session.get(url("/realtime/stream"), params=params) as response:
            assert response.status == 200
            assert response.headers["Content-Type"].startswith("text/event-stream")

            frames = await _read_frames(response, 2)
            assert frames[0].kind is FrameKind.CONNECTED
            assert '"subscriberId":"user-1"' in frames[0].data
            assert frames[1].event == backlog

            live = event_log.add_event("user-1", "t", "live")
            event_log.add_event("user-2", "t", "other")
            frames = await _read_until_heartbeats(response, 1)
            assert [f.event for f in frames if f.kind is FrameKind.DATA] == [live]

    @pytest.mark.asyncio
    async def test_each_event_written_once(self, http_session, url, event_log):
        params = {"subscriberId": "user-1", "since": "0"}
        async with http_session.get(url("/realtime/stream"), params=params) as response:
            await _read_frames(response, 1)
            first = event_log.add_event("user-1", "t", 1)
            second = event_log.add_event("user-1", "t", 2)
            frames = await _read_until_heartbeats(response, 2)

        assert [f.event for f in frames if f.kind is FrameKind.DATA] == [first, second]

    @pytest.mark.asyncio
    async def test_bad_since_is_400(self, http_session, url):
        async with http_session.get(url("/realtime/stream"), params={"since": "x"}) as response:
            assert response.status == 400


class TestPublishAndAdmin:
    """POST/DELETE /realtime/events and GET /realtime/stats"""

    @pytest.mark.asyncio
    async def test_publish(self, http_session, url, event_log):
        body = {"subscriberId": "user-1", "type": "order.created", "payload": {"orderId": 42}}
        async with http_session.post(url("/realtime/events"), json=body) as response:
            assert response.status == 201
            created = await response.json()
        assert created["type"] == "order.created"
        assert created["payload"] == {"orderId": 42}
        assert event_log.get_event(created["id"]).timestamp == created["timestamp"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[1, 2]",
            '{"type": "t"}',
            '{"subscriberId": "user-1"}',
            '{"subscriberId": "", "type": "t"}',
        ],
    )
    async def test_publish_rejects_bad_body(self, http_session, url, event_log, body):
        async with http_session.post(
            url("/realtime/events"), data=body, headers={"Content-Type": "application/json"}
        ) as response:
            assert response.status == 400
        assert len(event_log) == 0

    @pytest.mark.asyncio
    async def test_clear(self, http_session, url, event_log):
        event_log.add_event("user-1", "t")
        event_log.add_event("user-2", "t")
        async with http_session.delete(url("/realtime/events"), params={"subscriberId": "user-1"}) as response:
            assert response.status == 200
            assert (await response.json())["cleared"] == 1
        async with http_session.delete(url("/realtime/events")) as response:
            assert response.status == 400
        assert len(event_log) == 1

    @pytest.mark.asyncio
    async def test_stats(self, http_session, url, event_log):
        event_log.add_event("user-1", "order.created")
        async with http_session.get(url("/realtime/stats")) as response:
            stats = await response.json()
        assert stats["total_events"] == 1
        assert stats["events_by_subscriber"] == {"user-1": 1}
        assert stats["connections"]["total_connections"] == 0


class TestMultiRecipientPublish:
    """POST /realtime/events with subscriberIds"""

    @pytest.mark.asyncio
    async def test_one_event_per_subscriber(self, http_session, url, event_log):
        body = {"subscriberIds": ["user-1", "user-2", "user-1"], "type": "announcement", "payload": "hi"}
        async with http_session.post(url("/realtime/events"), json=body) as response:
            assert response.status == 201
            created = await response.json()

        assert created["count"] == 2
        assert len({e["id"] for e in created["events"]}) == 2
        assert len(event_log.get_latest_events("user-1")) == 1
        assert event_log.get_latest_events("user-2")[0].payload == "hi"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"subscriberIds": [], "type": "t"},
            {"subscriberIds": "user-1", "type": "t"},
            {"subscriberIds": ["user-1", ""], "type": "t"},
            {"subscriberIds": ["user-1", 7], "type": "t"},
            {"subscriberIds": ["user-1"]},
        ],
    )
    async def test_rejects_bad_recipients(self, http_session, url, event_log, body):
        async with http_session.post(url("/realtime/events"), json=body) as response:
            assert response.status == 400
            assert "error" in await response.json()
        assert len(event_log) == 0


class TestQuery:
    """GET /realtime/events"""

    @pytest.mark.asyncio
    async def test_filters_newest_first(self, http_session, url, event_log):
        created = event_log.add_event("user-1", "order.created")
        event_log.add_event("user-1", "order.updated")
        shipped = event_log.add_event("user-1", "order.created")
        event_log.add_event("user-2", "order.created")

        params = {"subscriberId": "user-1", "type": "order.created"}
        async with http_session.get(url("/realtime/events"), params=params) as response:
            assert response.status == 200
            assert "no-store" in response.headers["Cache-Control"]
            body = await response.json()
        assert [e["id"] for e in body["events"]] == [shipped.id, created.id]
        assert body["count"] == 2

    @pytest.mark.asyncio
    async def test_time_range_and_pagination(self, http_session, url, event_log):
        events = [event_log.add_event("user-1", "t", i) for i in range(5)]
        params = {
            "since": str(events[1].timestamp),
            "until": str(events[3].timestamp),
            "limit": "2",
            "offset": "1",
        }
        async with http_session.get(url("/realtime/events"), params=params) as response:
            body = await response.json()
        assert [e["id"] for e in body["events"]] == [events[2].id, events[1].id]
        assert body["offset"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [{"since": "soon"}, {"until": "-5"}, {"limit": "0"}, {"offset": "-1"}, {"offset": "x"}],
    )
    async def test_bad_query_is_400(self, http_session, url, params):
        async with http_session.get(url("/realtime/events"), params=params) as response:
            assert response.status == 400
            assert "error" in await response.json()


class TestConnections:
    """Open stream tracking and the subscriber connection routes."""

    @pytest.mark.asyncio
    async def test_open_stream_is_listed_and_counted(self, http_session, url):
        params = {"subscriberId": "user-1", "since": "0"}
        async with http_session.get(url("/realtime/stream"), params=params) as stream:
            await _read_frames(stream, 1)

            async with http_session.get(url("/realtime/subscribers/user-1/connections")) as response:
                assert response.status == 200
                listed = await response.json()
            async with http_session.get(url("/realtime/stats")) as response:
                stats = await response.json()

        assert listed["subscriberId"] == "user-1"
        assert len(listed["connections"]) == 1
        assert listed["connections"][0]["framesSent"] >= 1
        assert stats["connections"]["total_connections"] == 1
        assert stats["connections"]["connections_by_subscriber"] == {"user-1": 1}

    @pytest.mark.asyncio
    async def test_unknown_subscriber_has_no_connections(self, http_session, url):
        async with http_session.get(url("/realtime/subscribers/nobody/connections")) as response:
            assert (await response.json())["connections"] == []

    @pytest.mark.asyncio
    async def test_disconnect_closes_streams(self, http_session, url, relay_server):
        registry = relay_server.app[CONNECTIONS_KEY]
        async with http_session.get(url("/realtime/stream"), params={"subscriberId": "user-1"}) as mine, \
                http_session.get(url("/realtime/stream"), params={"subscriberId": "user-2"}) as other:
            await _read_frames(mine, 1)
            await _read_frames(other, 1)

            async with http_session.post(url("/realtime/subscribers/user-1/disconnect")) as response:
                assert response.status == 200
                assert await response.json() == {"subscriberId": "user-1", "disconnected": 1}

            await _read_to_end(mine)
            assert registry.get_subscriber_connections("user-1") == []
            assert len(registry.get_subscriber_connections("user-2")) == 1

    @pytest.mark.asyncio
    async def test_closed_stream_is_unregistered(self, http_session, url, relay_server):
        registry = relay_server.app[CONNECTIONS_KEY]
        async with http_session.get(url("/realtime/stream"), params={"subscriberId": "user-1"}) as stream:
            await _read_frames(stream, 1)
            assert len(registry) == 1
            stream.close()

        await wait_until(lambda: len(registry) == 0)


class TestCreateApp:
    def test_rejects_bad_heartbeat(self):
        with pytest.raises(ValueError):
            create_app(heartbeat_interval=0)

    def test_default_event_log(self):
        app = create_app()
        assert len(app[EVENT_LOG_KEY]) == 0
        assert len(app[CONNECTIONS_KEY]) == 0

    def test_injected_connection_registry(self):
        registry = ConnectionRegistry()
        assert create_app(connections=registry)[CONNECTIONS_KEY] is registry
