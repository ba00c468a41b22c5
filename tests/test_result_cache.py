from __future__ import annotations

import pytest

from engine.result_cache import ResultCache, make_cache_key


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_entry_expires_after_ttl_but_stays_until_sweep() -> None:
    clock = _Clock()
    cache = ResultCache("info", ttl_sec=10, max_entries=5, clock=clock)
    cache.put("k", {"id": "abc"})

    clock.now += 9.9
    assert cache.get("k") == {"id": "abc"}

    clock.now += 0.1
    assert cache.get("k") is None
    assert len(cache) == 1

    assert cache.sweep() == 1
    assert len(cache) == 0


def test_fifo_eviction_drops_oldest_insert() -> None:
    cache = ResultCache("search", ttl_sec=60, max_entries=3, clock=_Clock())
    for key in ("a", "b", "c", "d"):
        cache.put(key, key.upper())

    assert len(cache) == 3
    assert cache.get("a") is None
    assert [cache.get(k) for k in ("b", "c", "d")] == ["B", "C", "D"]


def test_reput_replaces_value_and_moves_key_to_back() -> None:
    clock = _Clock()
    cache = ResultCache("formats", ttl_sec=10, max_entries=3, clock=clock)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("c", 3)

    clock.now += 8
    cache.put("a", 10)
    cache.put("d", 4)

    assert cache.get("b") is None
    assert cache.get("a") == 10

    clock.now += 5
    # "a" was re-inserted with a fresh timestamp, "c" was not.
    assert cache.get("a") == 10
    assert cache.get("c") is None


def test_sweep_only_removes_expired_entries() -> None:
    clock = _Clock()
    cache = ResultCache("channel", ttl_sec=10, max_entries=10, clock=clock)
    cache.put("old", 1)
    clock.now += 6
    cache.put("new", 2)
    clock.now += 5

    assert cache.sweep() == 1
    assert cache.get("new") == 2
    assert cache.get("old") is None


def test_stats_track_hits_and_misses() -> None:
    cache = ResultCache("direct_urls", ttl_sec=10, max_entries=2, clock=_Clock())
    cache.put("k", "v")
    cache.get("k")
    cache.get("missing")

    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["max_size"] == 2
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5

    cache.clear()
    assert len(cache) == 0
    assert cache.stats()["hit_rate"] is None


def test_cache_key_is_canonical_over_param_order() -> None:
    first = make_cache_key("search", {"query": "cats", "count": 21})
    second = make_cache_key("search", {"count": 21, "query": "cats"})
    assert first == second == 'search_{"count":21,"query":"cats"}'
    assert make_cache_key("info", {"query": "cats", "count": 21}) != first


def test_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        ResultCache("info", ttl_sec=10, max_entries=0)
