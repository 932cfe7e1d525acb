"""SafeRoute Backend: Per-client sliding-window rate limiting"""

import logging
import time
from typing import Callable, Hashable

import cachetools

logger = logging.getLogger("saferoute.ratelimit")


class SlidingWindowLimiter:
    """Allows at most `limit` hits per client within any `window`-second span.

    Hit timestamps live in a TTLCache whose TTL equals the window, so idle
    clients drop out on their own and memory stays bounded by `max_clients`.
    """

    def __init__(
        self,
        limit: int,
        window: float,
        max_clients: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ):
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window positive")
        self.limit = limit
        self.window = window
        self._timer = timer
        self._hits = cachetools.TTLCache(maxsize=max_clients, ttl=window, timer=timer)

    def allow(self, client: Hashable) -> bool:
        """Record a hit for `client`. False when the client is over its limit."""
        now = self._timer()
        recent = [t for t in self._hits.get(client, ()) if now - t < self.window]
        if len(recent) >= self.limit:
            self._hits[client] = recent
            logger.info(f"Rate limit hit by {client}")
            return False
        recent.append(now)
        self._hits[client] = recent
        return True

    def retry_after(self, client: Hashable) -> int:
        """Seconds until the oldest hit in the window expires."""
        hits = self._hits.get(client) or []
        if not hits:
            return 0
        return max(1, int(self.window - (self._timer() - hits[0]) + 0.999))

    def __len__(self) -> int:
        self._hits.expire()
        return len(self._hits)
