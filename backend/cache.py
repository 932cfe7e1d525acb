"""SafeRoute Backend: In-memory caches

ResponseCache holds provider responses (routes, geocoding).
KeyedMemo memoizes expensive per-key computations with at most one
computation in flight per key.
"""

import threading
import time
from typing import Any, Callable, Hashable, Optional

import cachetools
from cachetools import LRUCache

from config import ROUTE_CACHE_TTL, GEOCODE_CACHE_TTL


class ResponseCache:
    """Thread-safe TTL cache; when full, the least recently used entry goes first."""

    def __init__(self, ttl: float = 3600, maxsize: int = 500, timer: Callable[[], float] = time.monotonic):
        self._store = cachetools.TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            return self._store.get(key)

    def set(self, key: Hashable, value: Any):
        with self._lock:
            self._store[key] = value

    def clear(self):
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            self._store.expire()
            return len(self._store)


class KeyedMemo:
    """Bounded LRU memo with per-key locking.

    Concurrent callers asking for the same key wait for the single
    computation in flight and share its result. Distinct keys compute
    in parallel. The global lock is never held while computing.
    """

    def __init__(self, maxsize: int = 64):
        self._cache: LRUCache = LRUCache(maxsize=maxsize)
        self._lock = threading.Lock()
        self._key_locks: dict[Hashable, threading.Lock] = {}
        self.computations = 0

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                if key in self._cache:
                    return self._cache[key]
            try:
                value = compute()
                with self._lock:
                    self._cache[key] = value
                    self.computations += 1
            finally:
                with self._lock:
                    if self._key_locks.get(key) is key_lock:
                        del self._key_locks[key]
        return value

    def clear(self):
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @property
    def maxsize(self) -> int:
        return int(self._cache.maxsize)


# Shared caches with different TTLs
route_cache = ResponseCache(ttl=ROUTE_CACHE_TTL, maxsize=1000)      # OSRM responses
geocode_cache = ResponseCache(ttl=GEOCODE_CACHE_TTL, maxsize=2000)  # Nominatim lookups
