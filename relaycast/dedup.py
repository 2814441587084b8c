"""
Bounded memory of recently delivered event ids.

The watermark alone cannot reject a redelivered event whose timestamp equals
the watermark, and a server restart may replay events the client has
already handled. RecentIdWindow remembers the last ``maxsize`` ids (LRU
order) so the client can drop such duplicates.

Usage:
    window = RecentIdWindow(maxsize=1000)
    if window.seen(event.id):
        return  # duplicate
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any


@dataclass
class WindowStats:
    """Statistics for a RecentIdWindow."""

    size: int
    maxsize: int
    hits: int
    misses: int
    hit_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "maxsize": self.maxsize,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
        }


class RecentIdWindow:
    """LRU set of event ids with a fixed capacity.

    A ``maxsize`` of 0 disables the window: nothing is remembered and
    ``seen()`` always returns False.
    """

    def __init__(self, maxsize: int = 1000):
        if maxsize < 0:
            raise ValueError("maxsize must be >= 0")
        self.maxsize = maxsize
        self._ids: OrderedDict[str, None] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def seen(self, event_id: str) -> bool:
        """Record ``event_id`` and report whether it was already present."""
        if self.maxsize == 0:
            return False
        if event_id in self._ids:
            self._ids.move_to_end(event_id)
            self._hits += 1
            return True
        self._misses += 1
        self._ids[event_id] = None
        while len(self._ids) > self.maxsize:
            self._ids.popitem(last=False)
        return False

    def clear(self) -> int:
        """Forget every id. Returns the number of ids dropped."""
        count = len(self._ids)
        self._ids.clear()
        return count

    @property
    def stats(self) -> WindowStats:
        total = self._hits + self._misses
        return WindowStats(
            size=len(self._ids),
            maxsize=self.maxsize,
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total else 0.0,
        )


__all__ = ["RecentIdWindow", "WindowStats"]
