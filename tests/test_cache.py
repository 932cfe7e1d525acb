"""Tests for the provider response cache and the per-key memo."""

import threading
import time

import pytest

from cache import KeyedMemo, ResponseCache


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestResponseCache:
    def test_set_and_get(self):
        cache = ResponseCache(ttl=60, maxsize=10)
        cache.set("k", {"v": 1})
        assert cache.get("k") == {"v": 1}
        assert cache.get("missing") is None

    def test_entries_expire(self):
        clock = Clock()
        cache = ResponseCache(ttl=10, maxsize=10, timer=clock)
        cache.set("k", 1)
        clock.now += 9
        assert cache.get("k") == 1
        clock.now += 2
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_full_cache_drops_least_recently_used(self):
        cache = ResponseCache(ttl=60, maxsize=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert len(cache) == 2
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3


class TestKeyedMemo:
    def test_computes_once_per_key(self):
        memo = KeyedMemo(maxsize=4)
        assert memo.get_or_compute("x", lambda: 1) == 1
        assert memo.get_or_compute("x", lambda: 2) == 1
        assert memo.computations == 1

    def test_concurrent_callers_share_one_computation(self):
        """Eight threads asking for the same key trigger a single computation"""
        memo = KeyedMemo(maxsize=4)
        calls = []

        def slow():
            calls.append(1)
            time.sleep(0.05)
            return "value"

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(memo.get_or_compute("k", slow)))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["value"] * 8
        assert len(calls) == 1
        assert memo.computations == 1

    def test_failed_computation_is_not_cached(self):
        memo = KeyedMemo(maxsize=4)

        def boom():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            memo.get_or_compute("k", boom)
        assert memo.get_or_compute("k", lambda: 5) == 5
        assert len(memo) == 1

    def test_lru_eviction(self):
        memo = KeyedMemo(maxsize=2)
        for key in ("a", "b", "c"):
            memo.get_or_compute(key, lambda: key)
        assert len(memo) == 2
        assert memo.maxsize == 2
