"""
Command line interface.

Usage:
    python -m relaycast serve --port 8080
    python -m relaycast tail --base-url http://localhost:8080 --subscriber user-1
    python -m relaycast publish --base-url http://localhost:8080 --subscriber user-1 \\
        --type order.created --payload '{"orderId": 42}'
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional, TextIO

import aiohttp

from relaycast.__version__ import get_version
from relaycast.client import DeliveryClient
from relaycast.config import ClientConfig, ServerConfig
from relaycast.exceptions import ConfigurationError, ReconnectExhaustedError
from relaycast.http_client import create_client_session
from relaycast.logging_config import clear_context, configure_logging, get_logger, set_context
from relaycast.models import WILDCARD, Event
from relaycast.server import EVENTS_PATH, run_server

logger = get_logger(__name__)


async def tail(
    config: ClientConfig,
    event_type: str = WILDCARD,
    out: TextIO = sys.stdout,
    stop: Optional[asyncio.Event] = None,
) -> int:
    """Print every delivered event as one JSON line until ``stop`` is set.

    Returns:
        Exit status: 1 if delivery gave up reconnecting, else 0.
    """
    stop = stop or asyncio.Event()
    exit_code = 0

    def print_event(event: Event) -> None:
        out.write(json.dumps(event.to_dict(), separators=(",", ":")) + "\n")
        out.flush()

    def on_error(error: Exception) -> None:
        nonlocal exit_code
        if isinstance(error, ReconnectExhaustedError):
            exit_code = 1
            stop.set()

    client = DeliveryClient(config)
    client.on(event_type, print_event)
    client.on_error(on_error)
    client.on_connection(lambda connected: logger.info("Connection changed", connected=connected))
    async with client:
        await stop.wait()
    return exit_code


async def publish(
    base_url: str,
    subscriber_id: str,
    event_type: str,
    payload: Any = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> dict[str, Any]:
    """POST one event and return the stored event as the server reports it."""
    body = {"subscriberId": subscriber_id, "type": event_type, "payload": payload}
    url = f"{base_url.rstrip('/')}{EVENTS_PATH}"
    owned = session is None
    session = session or create_client_session()
    try:
        async with session.post(url, json=body) as response:
            response.raise_for_status()
            return await response.json()
    finally:
        if owned:
            await session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relaycast",
        description="Resilient real-time event delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: RELAYCAST_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit logs as JSON lines",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the event log server")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Port (default: 8080)")
    serve_parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=None,
        help="Seconds between stream heartbeats (default: 30)",
    )
    serve_parser.add_argument(
        "--max-events",
        type=int,
        default=None,
        help="Events kept in memory (default: 1000)",
    )

    tail_parser = subparsers.add_parser("tail", help="Print events for a subscriber")
    tail_parser.add_argument("--base-url", default=None, help="Server URL (default: RELAYCAST_BASE_URL)")
    tail_parser.add_argument("--subscriber", "-s", default=None, help="Subscriber id")
    tail_parser.add_argument("--type", "-t", default=WILDCARD, help="Only this event type")
    tail_parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls")

    publish_parser = subparsers.add_parser("publish", help="Publish one event")
    publish_parser.add_argument("--base-url", required=True, help="Server URL")
    publish_parser.add_argument("--subscriber", "-s", required=True, help="Subscriber id")
    publish_parser.add_argument("--type", "-t", required=True, help="Event type")
    publish_parser.add_argument("--payload", default="null", help="JSON payload (default: null)")

    return parser


def _cmd_serve(args: argparse.Namespace) -> int:
    config = ServerConfig.from_env().with_overrides(
        host=args.host,
        port=args.port,
        heartbeat_interval=args.heartbeat_interval,
        max_events=args.max_events,
    )
    run_server(config)
    return 0


def _cmd_tail(args: argparse.Namespace) -> int:
    config = ClientConfig.from_env(
        base_url=args.base_url,
        subscriber_id=args.subscriber,
        poll_interval=args.poll_interval,
    )
    set_context(subscriber_id=config.subscriber_id)
    try:
        return asyncio.run(tail(config, args.type))
    except KeyboardInterrupt:
        return 0
    finally:
        clear_context()


def _cmd_publish(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"Invalid --payload: {e.msg}", file=sys.stderr)
        return 2
    try:
        event = asyncio.run(publish(args.base_url, args.subscriber, args.type, payload))
    except aiohttp.ClientError as e:
        print(f"Publish failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(event))
    return 0


_COMMANDS = {
    "serve": _cmd_serve,
    "tail": _cmd_tail,
    "publish": _cmd_publish,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(level=args.log_level, json_output=args.json_logs)
    try:
        return _COMMANDS[args.command](args)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
