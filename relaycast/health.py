"""
Connection health monitoring for the delivery client.

The HealthMonitor is the single source of truth for connectivity state and
owns the policy that decides retry timing and transport selection:

- Passive staleness detection: if nothing refreshed the connection within
  two heartbeat intervals, the link is marked disconnected even though no
  transport reported an error (silent half-open connections).
- Active checking: every health check interval a lightweight health check runs
  independently of the data transport, so "network reachable" is tracked
  separately from "stream open".
- Backoff: exponential delay with uniform jitter, capped.
- Fallback predicate: stateless, evaluated fresh on every call.

Usage:
    monitor = HealthMonitor(MonitorConfig(), health_check=check_health)
    unsubscribe = monitor.on_health_change(lambda h: print(h.connected))
    async with monitor:
        ...
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
import time
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from relaycast.config import MonitorConfig
from relaycast.models import ConnectionHealth, Strategy

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]
HealthListener = Callable[[ConnectionHealth], None]

# Backoff exponent cap; the delay is clamped by max_reconnect_delay long before
_MAX_BACKOFF_EXPONENT = 32


def now_ms() -> int:
    """Wall clock in milliseconds since the epoch."""
    return int(time.time() * 1000)


class HealthMonitor:
    """
    Tracks connectivity, latency and reconnect attempts of the active transport.

    Independent of which transport is active: adapters (through the client)
    report state changes, the monitor records them and issues
    recommendations via should_reconnect(), get_reconnect_delay() and
    should_fallback_to_polling().

    The two recurring timers are asyncio tasks created by start() and
    cancelled by stop(). Each loop carries the generation it was started
    with and exits without acting once stop() has bumped it, so no timer
    mutates state after stop() returns.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        health_check: Optional[HealthCheck] = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ):
        self.config = config or MonitorConfig()
        self._health_check = health_check
        self._clock = clock
        self._random = rng or random.Random()
        self._health = ConnectionHealth()
        self._listeners: dict[int, HealthListener] = {}
        self._tokens = itertools.count()
        self._tasks: list[asyncio.Task] = []
        self._stopped_tasks: list[asyncio.Task] = []
        self._generation = 0
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def set_health_check(self, health_check: Optional[HealthCheck]) -> None:
        """Replace the active health check (takes effect on the next check)."""
        self._health_check = health_check

    def start(self) -> None:
        """Start the staleness and health check timers. No-op while running.

        Must be called from a running event loop.
        """
        if self._running:
            return
        self._running = True
        self._generation += 1
        generation = self._generation
        self._tasks = [
            asyncio.create_task(self._staleness_loop(generation), name="relaycast-staleness"),
            asyncio.create_task(
                self._health_check_loop(generation), name="relaycast-health-check"
            ),
        ]
        logger.debug(
            f"Health monitor started (heartbeat={self.config.heartbeat_interval}s, "
            f"health_check={self.config.health_check_interval}s)"
        )

    def stop(self) -> None:
        """Cancel both timers. Idempotent; never notifies listeners."""
        if not self._running:
            return
        self._running = False
        self._generation += 1
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        self._stopped_tasks.extend(tasks)
        logger.debug("Health monitor stopped")

    async def wait_stopped(self) -> None:
        """Wait until timers cancelled by stop() have finished unwinding."""
        tasks, self._stopped_tasks = self._stopped_tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> HealthMonitor:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()
        await self.wait_stopped()

    def reset(self) -> None:
        """Restore the initial disconnected state without notifying listeners."""
        self._health = ConnectionHealth()

    # ------------------------------------------------------------------
    # State mutation
    # ------------------------------------------------------------------

    def update_connection(self, connected: bool, strategy: Strategy | None = None) -> None:
        """Record a transport-reported state change.

        A transition from disconnected to connected resets the reconnect
        attempt counter. The heartbeat timestamp is refreshed either way.
        """
        was_connected = self._health.connected
        self._health.connected = connected
        if strategy is not None:
            self._health.strategy = strategy
        self._health.last_heartbeat_at = self._clock()

        if connected and not was_connected:
            self._health.reconnect_attempts = 0
            logger.info(f"Connection established via {self._health.strategy.value}")
        elif was_connected and not connected:
            logger.warning(f"Connection lost ({self._health.strategy.value})")

        self._notify()

    def record_latency(self, latency_ms: float) -> None:
        """Record the round-trip time of the latest successful exchange."""
        self._health.latency_ms = float(latency_ms)
        if latency_ms > self.config.latency_threshold_ms:
            logger.debug(
                f"Latency {latency_ms:.0f}ms above threshold "
                f"{self.config.latency_threshold_ms:.0f}ms"
            )
        self._notify()

    def increment_reconnect_attempts(self) -> None:
        self._health.reconnect_attempts += 1
        logger.debug(f"Reconnect attempt {self._health.reconnect_attempts}")
        self._notify()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def should_reconnect(self) -> bool:
        return self._health.reconnect_attempts < self.config.max_reconnect_attempts

    def get_reconnect_delay(self) -> float:
        """Exponential backoff with jitter, in seconds.

        ``base * 2**attempts + uniform(0, max_jitter)``, capped at
        ``max_reconnect_delay``. Jitter spreads out clients that failed at
        the same moment.
        """
        exponent = min(self._health.reconnect_attempts, _MAX_BACKOFF_EXPONENT)
        exponential = self.config.reconnect_delay * (2**exponent)
        jitter = self._random.uniform(0, self.config.max_jitter)
        return min(exponential + jitter, self.config.max_reconnect_delay)

    def should_fallback_to_polling(self) -> bool:
        health = self._health
        return (
            not health.connected
            or health.latency_ms > self.config.latency_threshold_ms
            or health.reconnect_attempts >= 2
        )

    def get_health(self) -> ConnectionHealth:
        return replace(self._health)

    # ------------------------------------------------------------------
    # Checks driven by the timers
    # ------------------------------------------------------------------

    def check_staleness(self) -> bool:
        """Mark the connection lost if no update arrived for two heartbeats.

        Returns:
            True if the connection was marked stale by this call.
        """
        if not self._health.connected:
            return False
        elapsed_ms = self._clock() - self._health.last_heartbeat_at
        if elapsed_ms > self.config.heartbeat_interval * 2 * 1000:
            logger.warning(f"No heartbeat for {elapsed_ms}ms, marking connection stale")
            self.update_connection(False)
            return True
        return False

    async def run_health_check(self, generation: int | None = None) -> bool:
        """Run the health check once and record the outcome.

        Args:
            generation: Timer generation that issued the check. If the
                monitor was stopped while the check was in flight, the
                result is discarded.

        Returns:
            Whether the check succeeded.
        """
        if self._health_check is None:
            return self._health.connected

        start = time.monotonic()
        try:
            ok = bool(await self._health_check())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Health check failed: {type(e).__name__}: {e}")
            ok = False
        latency_ms = (time.monotonic() - start) * 1000

        if generation is not None and generation != self._generation:
            return ok

        if ok:
            self.record_latency(latency_ms)
            if not self._health.connected:
                self.update_connection(True)
        else:
            self.update_connection(False)
        return ok

    async def _staleness_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            if generation != self._generation:
                return
            self.check_staleness()

    async def _health_check_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            if generation != self._generation:
                return
            await self.run_health_check(generation)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_health_change(self, listener: HealthListener) -> Callable[[], None]:
        """Register a listener called after every mutation.

        Returns:
            A callable that removes this registration.
        """
        token = next(self._tokens)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(replace(self._health))
            except Exception as e:
                logger.error(
                    f"Error in connection health listener: {type(e).__name__}: {e}",
                    exc_info=True,
                )


__all__ = ["HealthMonitor", "HealthListener", "HealthCheck", "now_ms"]
