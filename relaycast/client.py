"""
Resilient event delivery client.

DeliveryClient keeps a subscriber's event stream flowing across network
trouble. It prefers the streaming transport, falls back to polling when the
health monitor says the link is degraded, and upgrades back to streaming
once the link recovers. Continuity across every switch is provided by the
watermark: the highest event timestamp delivered so far, passed as
``since`` whenever a transport is (re)opened.

Usage:
    config = ClientConfig.for_base_url("http://localhost:8080", "user-1")
    async with DeliveryClient(config) as client:
        client.on("order.created", handle_order)
        client.on_error(lambda e: log.warning(e))
        await asyncio.Event().wait()

Everything runs on one event loop. Adapter callbacks, health listeners and
timer tasks all re-check the client's ``active`` flag and generation token
before acting, so nothing is delivered after disconnect() returns.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from typing import Callable, Mapping, Optional

import aiohttp

from relaycast.adapters import EventSourceAdapter, PollingAdapter, StreamingAdapter
from relaycast.config import ClientConfig
from relaycast.dedup import RecentIdWindow
from relaycast.exceptions import (
    HandlerError,
    ReconnectExhaustedError,
    TransportOpenError,
    TransportReadError,
)
from relaycast.health import HealthMonitor
from relaycast.http_client import (
    NO_CACHE_HEADERS,
    HEALTH_CHECK_TIMEOUT,
    create_client_session,
    stream_timeout,
)
from relaycast.logging_config import LogContext
from relaycast.models import WILDCARD, ConnectionHealth, Event, Strategy

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]
ErrorHandler = Callable[[Exception], None]
ConnectionHandler = Callable[[bool], None]
AdapterFactory = Callable[..., EventSourceAdapter]
Unsubscribe = Callable[[], None]


class DeliveryClient:
    """
    Delivers server events to registered handlers over streaming or polling.

    The client is the only owner of the watermark, the active adapter and
    the handler registry. Adapters report through callbacks; the health
    monitor decides retry timing and transport selection.

    Args:
        config: Endpoints, subscriber id and polling settings.
        monitor: Health monitor to use. Built from ``config`` if omitted.
        session: aiohttp session to share. If omitted, connect() creates
            one and disconnect() closes it.
        adapter_factories: Per-strategy adapter constructors, mainly for
            substituting transports in tests.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        monitor: Optional[HealthMonitor] = None,
        session: Optional[aiohttp.ClientSession] = None,
        adapter_factories: Optional[Mapping[Strategy, AdapterFactory]] = None,
    ):
        self.config = config
        self.monitor = monitor or HealthMonitor(config.monitor_config())
        self._session = session
        self._owns_session = False

        self._factories: dict[Strategy, AdapterFactory] = {
            Strategy.STREAMING: functools.partial(
                StreamingAdapter,
                timeout=stream_timeout(self.monitor.config.heartbeat_interval),
            ),
            Strategy.POLLING: PollingAdapter,
        }
        if adapter_factories:
            self._factories.update(adapter_factories)

        self._handlers: dict[str, dict[int, EventHandler]] = {}
        self._error_handlers: dict[int, ErrorHandler] = {}
        self._connection_handlers: dict[int, ConnectionHandler] = {}
        self._tokens = itertools.count()

        self._watermark = 0
        self._recent_ids = RecentIdWindow(config.dedup_window)

        self._adapter: EventSourceAdapter | None = None
        self._adapter_serial: int | None = None
        self._serials = itertools.count(1)
        self._strategy = Strategy.STREAMING
        self._closing: set[asyncio.Task] = set()

        self._active = False
        self._generation = 0
        self._backoff_task: asyncio.Task | None = None
        self._upgrade_task: asyncio.Task | None = None
        self._last_connected = False
        self._unsubscribe_health: Unsubscribe | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def last_event_timestamp(self) -> int:
        """The watermark: highest event timestamp delivered so far."""
        return self._watermark

    async def connect(self) -> None:
        """Start delivery. No-op if already connected."""
        if self._active:
            return
        self._active = True
        self._generation += 1

        if self._session is None:
            self._session = create_client_session()
            self._owns_session = True

        self.monitor.set_health_check(self._check_health)
        self.monitor.reset()
        self._last_connected = False
        if self._unsubscribe_health is None:
            self._unsubscribe_health = self.monitor.on_health_change(self._on_health_change)
        self.monitor.start()

        logger.info(
            f"Connecting subscriber {self.config.subscriber_id} "
            f"(since={self._watermark})"
        )
        self._switch_to(Strategy.STREAMING)

    async def disconnect(self) -> None:
        """Stop delivery and release resources. Safe to call repeatedly.

        Subscriptions are kept for a later connect().
        """
        was_active = self._active
        self._teardown()

        if self.monitor.get_health().connected:
            self.monitor.update_connection(False)
        if self._unsubscribe_health is not None:
            self._unsubscribe_health()
            self._unsubscribe_health = None

        await self.monitor.wait_stopped()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

        if was_active:
            logger.info(f"Disconnected subscriber {self.config.subscriber_id}")

    async def __aenter__(self) -> DeliveryClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    def _teardown(self) -> None:
        """Synchronously stop timers, the monitor and the active adapter."""
        self._active = False
        self._generation += 1
        for task in (self._backoff_task, self._upgrade_task):
            if task is not None and not task.done():
                task.cancel()
                self._track(task)
        self._backoff_task = None
        self._upgrade_task = None
        self.monitor.stop()
        self._retire_adapter()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Register a handler for ``event_type`` (``"*"`` for every event).

        Returns:
            A callable removing exactly this registration.
        """
        token = next(self._tokens)
        self._handlers.setdefault(event_type, {})[token] = handler

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers is None:
                return
            handlers.pop(token, None)
            if not handlers:
                del self._handlers[event_type]

        return unsubscribe

    def on_error(self, handler: ErrorHandler) -> Unsubscribe:
        return self._register(self._error_handlers, handler)

    def on_connection(self, handler: ConnectionHandler) -> Unsubscribe:
        """Register a handler called on connectivity transitions only."""
        return self._register(self._connection_handlers, handler)

    def _register(self, registry: dict[int, Callable], handler: Callable) -> Unsubscribe:
        token = next(self._tokens)
        registry[token] = handler

        def unsubscribe() -> None:
            registry.pop(token, None)

        return unsubscribe

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_connection_health(self) -> ConnectionHealth:
        return self.monitor.get_health()

    def get_current_strategy(self) -> Strategy:
        return self._strategy

    # ------------------------------------------------------------------
    # Adapter management
    # ------------------------------------------------------------------

    def _switch_to(self, strategy: Strategy) -> None:
        """Replace the active adapter with a fresh one opened at the watermark."""
        self._retire_adapter()
        serial = next(self._serials)
        adapter = self._factories[strategy](
            self.config,
            self._session,
            on_event=functools.partial(self._handle_event, serial),
            on_status=functools.partial(self._handle_status, serial),
            on_error=functools.partial(self._handle_error, serial),
            on_latency=functools.partial(self._handle_latency, serial),
        )
        self._adapter = adapter
        self._adapter_serial = serial
        self._strategy = strategy
        with LogContext(subscriber_id=self.config.subscriber_id, strategy=strategy.value):
            adapter.open(self._watermark)

    def _retire_adapter(self) -> None:
        adapter, self._adapter = self._adapter, None
        self._adapter_serial = None
        if adapter is not None:
            adapter.close()
            self._track(asyncio.ensure_future(adapter.wait_closed()))

    def _track(self, task: asyncio.Future) -> None:
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _is_live(self, serial: int) -> bool:
        return self._active and serial == self._adapter_serial

    def _defer(self, callback: Callable, *args) -> None:
        asyncio.get_running_loop().call_soon(callback, self._generation, *args)

    # ------------------------------------------------------------------
    # Adapter callbacks
    # ------------------------------------------------------------------

    def _handle_event(self, serial: int, event: Event) -> None:
        if not self._is_live(serial):
            return
        if self._recent_ids.seen(event.id):
            logger.debug(f"Dropping duplicate event {event.id}")
            return
        if event.timestamp > self._watermark:
            self._watermark = event.timestamp
        self._dispatch(event)

    def _handle_status(self, serial: int, connected: bool) -> None:
        if self._is_live(serial):
            self.monitor.update_connection(connected, self._strategy)

    def _handle_latency(self, serial: int, latency_ms: float) -> None:
        if self._is_live(serial):
            self.monitor.record_latency(latency_ms)

    def _handle_error(self, serial: int, error: Exception) -> None:
        if not self._is_live(serial):
            return
        self._report_error(error)
        if self._strategy is Strategy.STREAMING and isinstance(
            error, (TransportOpenError, TransportReadError)
        ):
            self._defer(self._handle_stream_failure, serial)

    # ------------------------------------------------------------------
    # Failover and recovery
    # ------------------------------------------------------------------

    def _handle_stream_failure(self, generation: int, serial: int) -> None:
        if generation != self._generation or not self._is_live(serial):
            return
        monitor = self.monitor
        if monitor.get_health().connected:
            monitor.update_connection(False, Strategy.STREAMING)

        if not monitor.should_reconnect():
            attempts = monitor.get_health().reconnect_attempts
            error = ReconnectExhaustedError(attempts, monitor.config.max_reconnect_attempts)
            logger.error(f"{error}; delivery stopped")
            self._teardown()
            self._report_error(error)
            return

        monitor.increment_reconnect_attempts()
        if monitor.should_fallback_to_polling():
            logger.warning(f"Falling back to polling (since={self._watermark})")
            self._switch_to(Strategy.POLLING)
            return

        delay = monitor.get_reconnect_delay()
        logger.info(
            f"Reconnecting stream in {delay:.2f}s "
            f"(attempt {monitor.get_health().reconnect_attempts})"
        )
        self._backoff_task = asyncio.create_task(
            self._reopen_stream_after(generation, serial, delay),
            name="relaycast-backoff",
        )

    async def _reopen_stream_after(self, generation: int, serial: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation or not self._is_live(serial):
            return
        self._backoff_task = None
        self._switch_to(Strategy.STREAMING)

    def _on_health_change(self, health: ConnectionHealth) -> None:
        if health.connected != self._last_connected:
            self._last_connected = health.connected
            self._notify_connection(health.connected)

        if (
            self._active
            and self._strategy is Strategy.POLLING
            and health.connected
            and self._upgrade_task is None
            and not self.monitor.should_fallback_to_polling()
        ):
            delay = self.monitor.get_reconnect_delay()
            logger.info(f"Link healthy, upgrading to streaming in {delay:.2f}s")
            self._upgrade_task = asyncio.create_task(
                self._upgrade_after(self._generation, self._adapter_serial, delay),
                name="relaycast-upgrade",
            )

    async def _upgrade_after(self, generation: int, serial: int | None, delay: float) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation or serial is None or not self._is_live(serial):
            return
        self._upgrade_task = None
        if self.monitor.should_fallback_to_polling():
            logger.debug("Link degraded again, staying on polling")
            return
        self._switch_to(Strategy.STREAMING)

    async def _check_health(self) -> bool:
        if self._session is None:
            return False
        async with self._session.get(
            self.config.health_endpoint,
            headers=NO_CACHE_HEADERS,
            timeout=HEALTH_CHECK_TIMEOUT,
        ) as response:
            return response.status == 200

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, event: Event) -> None:
        handlers = list(self._handlers.get(event.type, {}).values())
        if event.type != WILDCARD:
            handlers.extend(self._handlers.get(WILDCARD, {}).values())

        with LogContext(subscriber_id=self.config.subscriber_id):
            for handler in handlers:
                try:
                    handler(event)
                except Exception as e:
                    logger.error(
                        f"Handler for '{event.type}' raised {type(e).__name__}: {e}",
                        exc_info=True,
                    )
                    self._report_error(HandlerError(event.type, e, event))

    def _report_error(self, error: Exception) -> None:
        for handler in list(self._error_handlers.values()):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Error in error handler: {type(e).__name__}: {e}", exc_info=True)

    def _notify_connection(self, connected: bool) -> None:
        for handler in list(self._connection_handlers.values()):
            try:
                handler(connected)
            except Exception as e:
                logger.error(
                    f"Error in connection handler: {type(e).__name__}: {e}", exc_info=True
                )


__all__ = ["DeliveryClient", "EventHandler", "ErrorHandler", "ConnectionHandler", "AdapterFactory"]
