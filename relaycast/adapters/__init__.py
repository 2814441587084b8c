"""
Event source adapters: the two transports the delivery client switches between.
"""

from relaycast.adapters.base import AdapterState, EventSourceAdapter
from relaycast.adapters.polling import PollingAdapter
from relaycast.adapters.streaming import StreamingAdapter

__all__ = [
    "AdapterState",
    "EventSourceAdapter",
    "PollingAdapter",
    "StreamingAdapter",
]
