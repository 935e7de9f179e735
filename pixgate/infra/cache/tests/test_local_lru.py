# SPDX-License-Identifier: MIT

import pytest

from pixgate.infra.cache.entry import CacheEntry
from pixgate.infra.cache.local import LocalLRUCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _entry(key: str, ttl: int = 60, now: float = 1000.0) -> CacheEntry:
    return CacheEntry.create(key, {"url": f"file:///{key}"}, ttl_seconds=ttl, now=now)


def test_least_recently_used_is_evicted():
    cache = LocalLRUCache(2, clock=FakeClock())
    cache.put(_entry("a"))
    cache.put(_entry("b"))
    assert cache.get("a") is not None
    cache.put(_entry("c"))
    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert cache.evictions == 1


def test_expired_entries_are_not_served():
    clock = FakeClock()
    cache = LocalLRUCache(10, clock=clock)
    cache.put(_entry("a", ttl=30))
    cache.put(_entry("b", ttl=300))
    clock.now += 31
    assert cache.get("a") is None
    assert cache.purge_expired() == 0
    clock.now += 300
    assert cache.purge_expired() == 1
    assert len(cache) == 0


def test_get_updates_access_stats():
    clock = FakeClock()
    cache = LocalLRUCache(10, clock=clock)
    cache.put(_entry("a"))
    clock.now += 5
    entry = cache.get("a")
    assert entry.access_count == 1
    assert entry.last_accessed == clock.now


def test_stats_and_size_bound():
    cache = LocalLRUCache(3, clock=FakeClock())
    for i in range(10):
        cache.put(_entry(f"k{i}"))
    stats = cache.stats()
    assert stats["entries"] == 3
    assert stats["evictions"] == 7
    assert stats["size_bytes"] > 0


def test_entry_json_round_trip_keeps_bytes():
    entry = CacheEntry.create("k", b"\x00\x01binary", ttl_seconds=10, format_class="raw", now=5.0)
    restored = CacheEntry.from_json(entry.to_json())
    assert restored.payload == b"\x00\x01binary"
    assert restored.format_class == "raw"
    assert restored.expires_at == 15.0


def test_max_entries_must_be_positive():
    with pytest.raises(ValueError):
        LocalLRUCache(0)
