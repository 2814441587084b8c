"""
HTTP endpoints serving the event log.

Routes:
    GET    /realtime/stream          text/event-stream: ack, backlog, live events, heartbeats
    GET    /realtime/poll            JSON array of events
    GET    /health                   liveness check
    GET    /realtime/events          filtered, paginated query
    POST   /realtime/events          append an event for one or more subscribers
    DELETE /realtime/events          clear one subscriber's events
    GET    /realtime/stats           event log and connection statistics
    GET    /realtime/subscribers/{subscriber_id}/connections
                                     open streams of a subscriber
    POST   /realtime/subscribers/{subscriber_id}/disconnect
                                     close those streams

Usage:
    app = create_app(EventLog(), heartbeat_interval=30.0)
    web.run_app(app, port=8080)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from aiohttp import web

from relaycast.config import HEALTH_PATH, POLL_PATH, STREAM_PATH, ServerConfig
from relaycast.connections import ConnectionRegistry
from relaycast.event_log import EventLog
from relaycast.frames import encode_connected_frame, encode_event_frame, encode_heartbeat_frame
from relaycast.health import now_ms
from relaycast.logging_config import get_logger, request_logging_middleware

logger = logging.getLogger(__name__)
slog = get_logger(__name__)

EVENTS_PATH = "/realtime/events"
STATS_PATH = "/realtime/stats"
SUBSCRIBER_CONNECTIONS_PATH = "/realtime/subscribers/{subscriber_id}/connections"
SUBSCRIBER_DISCONNECT_PATH = "/realtime/subscribers/{subscriber_id}/disconnect"

DEFAULT_POLL_LIMIT = 50
MAX_POLL_LIMIT = 1000
DEFAULT_SUBSCRIBER = "anonymous"

# A stream with no completed write for this many heartbeats is closed
STALE_HEARTBEATS = 3

NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

EVENT_LOG_KEY = web.AppKey("event_log", EventLog)
HEARTBEAT_INTERVAL_KEY = web.AppKey("heartbeat_interval", float)
CONNECTIONS_KEY = web.AppKey("connections", ConnectionRegistry)


class QueryError(ValueError):
    """Invalid query parameter or request body field."""


def _query_int(
    request: web.Request,
    name: str,
    default: Optional[int] = None,
    minimum: int = 0,
) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise QueryError(f"'{name}' must be an integer") from None
    if value < minimum:
        raise QueryError(f"'{name}' must be >= {minimum}")
    return value


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status, headers=NO_STORE_HEADERS)


def _subscriber(request: web.Request) -> str:
    return request.query.get("subscriberId") or DEFAULT_SUBSCRIBER


def _recipients(body: dict[str, Any]) -> list[str]:
    """Subscriber ids named by a publish body, in order, without repeats.

    Raises:
        QueryError: If neither ``subscriberId`` nor a non-empty
            ``subscriberIds`` list of non-empty strings is given.
    """
    if "subscriberIds" in body:
        ids = body["subscriberIds"]
        if not isinstance(ids, list) or not ids:
            raise QueryError("'subscriberIds' must be a non-empty list")
        if not all(isinstance(s, str) and s for s in ids):
            raise QueryError("'subscriberIds' must contain non-empty strings")
        return list(dict.fromkeys(ids))
    subscriber_id = body.get("subscriberId")
    if not isinstance(subscriber_id, str) or not subscriber_id:
        raise QueryError("'subscriberId' is required")
    return [subscriber_id]


# ============================================================================
# Handlers
# ============================================================================


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response(
        {"status": "ok", "timestamp": now_ms()},
        headers=NO_STORE_HEADERS,
    )


async def handle_poll(request: web.Request) -> web.Response:
    """GET /realtime/poll?subscriberId=&since=&limit=

    With ``since``: the oldest ``limit`` events newer than ``since``, in
    ascending order. Without: the newest ``limit`` events, newest first.
    """
    event_log = request.app[EVENT_LOG_KEY]
    try:
        since = _query_int(request, "since")
        limit = _query_int(request, "limit", DEFAULT_POLL_LIMIT, minimum=1)
    except QueryError as e:
        return _error(400, str(e))
    limit = min(limit, MAX_POLL_LIMIT)

    subscriber_id = _subscriber(request)
    if since is not None:
        events = event_log.get_events_since(subscriber_id, since)[:limit]
    else:
        events = event_log.get_latest_events(subscriber_id, limit)
    return web.json_response([e.to_dict() for e in events], headers=NO_STORE_HEADERS)


async def handle_stream(request: web.Request) -> web.StreamResponse:
    """GET /realtime/stream?subscriberId=&since=

    Sends the acknowledgment frame, then every event newer than ``since``,
    then new events as they are appended, with a heartbeat frame every
    heartbeat interval. Each connection keeps its own cursor so no event
    is written twice.
    """
    event_log = request.app[EVENT_LOG_KEY]
    heartbeat_interval = request.app[HEARTBEAT_INTERVAL_KEY]
    try:
        cursor = _query_int(request, "since", 0)
    except QueryError as e:
        return _error(400, str(e))
    subscriber_id = _subscriber(request)

    response = web.StreamResponse(status=200, headers=STREAM_HEADERS)
    await response.prepare(request)

    registry = request.app[CONNECTIONS_KEY]
    connection = registry.register(subscriber_id, asyncio.current_task())
    loop = asyncio.get_running_loop()
    slog.info("Stream opened", connection_id=connection.id, since=cursor)

    async def send(frame: str) -> None:
        await response.write(frame.encode("utf-8"))
        registry.touch(connection)

    try:
        await send(encode_connected_frame(subscriber_id, now_ms()))
        next_heartbeat = loop.time() + heartbeat_interval
        while True:
            timeout = max(0.0, next_heartbeat - loop.time())
            for event in await event_log.wait_for_events(subscriber_id, cursor, timeout):
                await send(encode_event_frame(event))
                cursor = max(cursor, event.timestamp)
            if loop.time() >= next_heartbeat:
                await send(encode_heartbeat_frame(now_ms()))
                next_heartbeat = loop.time() + heartbeat_interval
    except ConnectionResetError:
        slog.info("Stream closed by client", connection_id=connection.id)
    finally:
        registry.unregister(connection)
    return response


async def handle_query(request: web.Request) -> web.Response:
    """GET /realtime/events?subscriberId=&type=&since=&until=&limit=&offset=

    Newest first. ``since`` and ``until`` are inclusive.
    """
    try:
        since = _query_int(request, "since")
        until = _query_int(request, "until")
        limit = _query_int(request, "limit", DEFAULT_POLL_LIMIT, minimum=1)
        offset = _query_int(request, "offset", 0)
    except QueryError as e:
        return _error(400, str(e))

    events = request.app[EVENT_LOG_KEY].get_events(
        subscriber_id=request.query.get("subscriberId") or None,
        event_type=request.query.get("type") or None,
        since=since,
        until=until,
        limit=min(limit, MAX_POLL_LIMIT),
        offset=offset,
    )
    return web.json_response(
        {"events": [e.to_dict() for e in events], "count": len(events), "offset": offset},
        headers=NO_STORE_HEADERS,
    )


async def handle_publish(request: web.Request) -> web.Response:
    """POST /realtime/events

    Body ``{"subscriberId", "type", "payload"}`` returns the stored event.
    Body ``{"subscriberIds": [...], "type", "payload"}`` stores one event per
    subscriber and returns ``{"events": [...], "count": n}``.
    """
    event_log = request.app[EVENT_LOG_KEY]
    try:
        body: Any = await request.json()
    except ValueError:
        return _error(400, "Request body must be valid JSON")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    try:
        recipients = _recipients(body)
    except QueryError as e:
        return _error(400, str(e))
    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        return _error(400, "'type' is required")

    payload = body.get("payload")
    events = [event_log.add_event(sub, event_type, payload) for sub in recipients]
    slog.info("Published", event_type=event_type, recipients=len(events))
    if "subscriberIds" not in body:
        return web.json_response(events[0].to_dict(), status=201)
    return web.json_response(
        {"events": [e.to_dict() for e in events], "count": len(events)},
        status=201,
    )


async def handle_clear(request: web.Request) -> web.Response:
    """DELETE /realtime/events?subscriberId="""
    subscriber_id = request.query.get("subscriberId")
    if not subscriber_id:
        return _error(400, "'subscriberId' is required")
    cleared = request.app[EVENT_LOG_KEY].clear_events(subscriber_id)
    return web.json_response({"subscriberId": subscriber_id, "cleared": cleared})


async def handle_stats(request: web.Request) -> web.Response:
    stats = request.app[EVENT_LOG_KEY].get_stats()
    stats["connections"] = request.app[CONNECTIONS_KEY].get_stats()
    return web.json_response(stats, headers=NO_STORE_HEADERS)


async def handle_subscriber_connections(request: web.Request) -> web.Response:
    subscriber_id = request.match_info["subscriber_id"]
    connections = request.app[CONNECTIONS_KEY].get_subscriber_connections(subscriber_id)
    return web.json_response(
        {"subscriberId": subscriber_id, "connections": [c.to_dict() for c in connections]},
        headers=NO_STORE_HEADERS,
    )


async def handle_subscriber_disconnect(request: web.Request) -> web.Response:
    subscriber_id = request.match_info["subscriber_id"]
    closed = request.app[CONNECTIONS_KEY].disconnect_subscriber(subscriber_id)
    slog.info("Subscriber disconnected", target=subscriber_id, closed=closed)
    return web.json_response({"subscriberId": subscriber_id, "disconnected": closed})


# ============================================================================
# Application
# ============================================================================


async def _stale_connection_sweeper(app: web.Application):
    interval = app[HEARTBEAT_INTERVAL_KEY] * STALE_HEARTBEATS
    max_idle_ms = int(interval * 1000)

    async def sweep() -> None:
        while True:
            await asyncio.sleep(interval)
            app[CONNECTIONS_KEY].cleanup_stale(max_idle_ms)

    task = asyncio.create_task(sweep(), name="relaycast-stale-sweeper")
    yield
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def _close_streams(app: web.Application) -> None:
    closed = app[CONNECTIONS_KEY].close_all()
    if closed:
        logger.info(f"Closing {closed} open stream(s)")


def create_app(
    event_log: Optional[EventLog] = None,
    heartbeat_interval: float = 30.0,
    connections: Optional[ConnectionRegistry] = None,
) -> web.Application:
    """Build the aiohttp application serving ``event_log``."""
    if heartbeat_interval <= 0:
        raise ValueError("heartbeat_interval must be positive")
    app = web.Application(middlewares=[request_logging_middleware])
    app[EVENT_LOG_KEY] = event_log if event_log is not None else EventLog()
    app[HEARTBEAT_INTERVAL_KEY] = float(heartbeat_interval)
    app[CONNECTIONS_KEY] = connections if connections is not None else ConnectionRegistry()
    app.cleanup_ctx.append(_stale_connection_sweeper)
    app.on_shutdown.append(_close_streams)

    app.router.add_get(STREAM_PATH, handle_stream)
    app.router.add_get(POLL_PATH, handle_poll)
    app.router.add_get(HEALTH_PATH, handle_health)
    app.router.add_get(EVENTS_PATH, handle_query)
    app.router.add_post(EVENTS_PATH, handle_publish)
    app.router.add_delete(EVENTS_PATH, handle_clear)
    app.router.add_get(STATS_PATH, handle_stats)
    app.router.add_get(SUBSCRIBER_CONNECTIONS_PATH, handle_subscriber_connections)
    app.router.add_post(SUBSCRIBER_DISCONNECT_PATH, handle_subscriber_disconnect)
    return app


def run_server(config: ServerConfig | None = None) -> None:
    """Serve a fresh event log until interrupted."""
    config = config or ServerConfig()
    app = create_app(EventLog(config.max_events), config.heartbeat_interval)
    logger.info(f"Serving on http://{config.host}:{config.port}")
    web.run_app(app, host=config.host, port=config.port, print=None)


__all__ = [
    "EVENT_LOG_KEY",
    "HEARTBEAT_INTERVAL_KEY",
    "CONNECTIONS_KEY",
    "create_app",
    "run_server",
    "handle_health",
    "handle_poll",
    "handle_stream",
    "handle_query",
    "handle_publish",
    "handle_clear",
    "handle_stats",
    "handle_subscriber_connections",
    "handle_subscriber_disconnect",
]
