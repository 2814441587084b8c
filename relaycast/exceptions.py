"""
Custom exception types for relaycast.

This module defines the hierarchy of exceptions used throughout the package.
Using specific exception types enables:
- Precise handling of transport failures versus programming errors
- Better error messages and debugging
- A single terminal error (ReconnectExhaustedError) that callers can key on

Transport failures are normally *not* raised to callers. The delivery client
absorbs them, converts them into health transitions and hands the exception
object to registered error handlers.
"""

from __future__ import annotations

from typing import Any


class RelaycastError(Exception):
    """Base exception for all relaycast errors.

    All custom exceptions in relaycast inherit from this class
    to enable catching every relaycast-specific error with a single handler.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ConfigurationError(RelaycastError):
    """Raised when a configuration value is invalid."""

    def __init__(self, component: str, reason: str):
        super().__init__(
            f"Invalid {component} configuration: {reason}",
            {"component": component, "reason": reason},
        )
        self.component = component
        self.reason = reason


# ============================================================================
# Transport Errors
# ============================================================================


class TransportError(RelaycastError):
    """Base exception for event transport failures.

    All transport errors are retryable unless stated otherwise; the client
    decides whether to retry, fall back or give up.
    """

    def __init__(
        self,
        message: str,
        strategy: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ):
        merged = {"strategy": strategy, **(details or {})}
        super().__init__(message, merged)
        self.strategy = strategy
        self.recoverable = recoverable


class TransportOpenError(TransportError):
    """Raised when the streaming connection could not be established."""

    def __init__(self, reason: str, status: int | None = None):
        details: dict[str, Any] = {"reason": reason}
        if status is not None:
            details["status"] = status
        super().__init__(f"Stream open failed: {reason}", "streaming", details)
        self.reason = reason
        self.status = status


class TransportReadError(TransportError):
    """Raised when an open stream stops delivering (disconnect, EOF, timeout)."""

    def __init__(self, reason: str):
        super().__init__(f"Stream read failed: {reason}", "streaming", {"reason": reason})
        self.reason = reason


class PollRequestError(TransportError):
    """Raised when a single poll request fails."""

    def __init__(self, reason: str, status: int | None = None):
        details: dict[str, Any] = {"reason": reason}
        if status is not None:
            details["status"] = status
        super().__init__(f"Poll request failed: {reason}", "polling", details)
        self.reason = reason
        self.status = status


class FrameDecodeError(TransportError):
    """Raised when a frame or event body cannot be decoded.

    A malformed frame is skipped; the transport keeps running.
    """

    def __init__(self, reason: str, raw: str | None = None, strategy: str = "streaming"):
        details: dict[str, Any] = {"reason": reason}
        if raw is not None:
            details["raw"] = raw[:200]
        super().__init__(f"Malformed frame: {reason}", strategy, details)
        self.reason = reason
        self.raw = raw


# ============================================================================
# Client Errors
# ============================================================================


class AdapterStateError(RelaycastError):
    """Raised on an illegal adapter state transition."""

    def __init__(self, adapter: str, current: str, target: str):
        super().__init__(
            f"Adapter {adapter} cannot move from {current} to {target}",
            {"adapter": adapter, "current": current, "target": target},
        )
        self.adapter = adapter
        self.current = current
        self.target = target


class HandlerError(RelaycastError):
    """Wraps an exception raised by a subscriber callback.

    Handler errors are isolated: they are reported to error handlers and
    never interrupt dispatch to the remaining handlers.
    """

    def __init__(self, event_type: str, cause: BaseException, event: Any = None):
        super().__init__(
            f"Handler for '{event_type}' raised {type(cause).__name__}: {cause}",
            {"event_type": event_type, "error_type": type(cause).__name__},
        )
        self.event_type = event_type
        self.cause = cause
        self.event = event
        self.__cause__ = cause


class ReconnectExhaustedError(RelaycastError):
    """Raised (and reported) when reconnect attempts are exhausted.

    This is the only terminal condition. The client stops retrying and the
    caller must invoke ``connect()`` again to resume delivery.
    """

    def __init__(self, attempts: int, max_attempts: int):
        super().__init__(
            f"Gave up reconnecting after {attempts} attempts (limit {max_attempts})",
            {"attempts": attempts, "max_attempts": max_attempts},
        )
        self.attempts = attempts
        self.max_attempts = max_attempts


__all__ = [
    "RelaycastError",
    "ConfigurationError",
    "TransportError",
    "TransportOpenError",
    "TransportReadError",
    "PollRequestError",
    "FrameDecodeError",
    "AdapterStateError",
    "HandlerError",
    "ReconnectExhaustedError",
]
