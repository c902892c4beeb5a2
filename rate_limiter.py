"""Fixed-window request counting per client address."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

log = logging.getLogger("lumiere")


@dataclass
class RateLimitEntry:
    """Request count for one client within the current window."""

    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    Count requests per key in discrete, non-overlapping windows.

    Bursts straddling a window boundary may pass up to twice the limit; this
    is accepted in exchange for O(1) state per key.

    Check-and-increment never awaits, so one event loop needs no lock. Guard
    is_limited() with a threading.Lock if the limiter is shared across threads.
    """

    def __init__(
        self,
        max_requests: int,
        window_s: float,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_s = window_s
        self.name = name
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_limited(self, key: str) -> bool:
        """Record one request for key and report whether it exceeds the limit."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None or now > entry.reset_at:
            self._entries[key] = RateLimitEntry(count=1, reset_at=now + self.window_s)
            return False
        entry.count += 1
        return entry.count > self.max_requests

    def quota(self, key: str) -> Tuple[int, float]:
        """Return (remaining requests, seconds until the window resets) for key."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None or now > entry.reset_at:
            return self.max_requests, self.window_s
        return max(self.max_requests - entry.count, 0), max(entry.reset_at - now, 0.0)

    def evict_expired(self) -> int:
        """Drop entries whose window has elapsed. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now > e.reset_at]
        for k in expired:
            del self._entries[k]
        if expired:
            log.debug(
                "Rate limiter %s evicted=%d remaining=%d", self.name, len(expired), len(self._entries)
            )
        return len(expired)
