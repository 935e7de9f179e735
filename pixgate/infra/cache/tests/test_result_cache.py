# SPDX-License-Identifier: MIT

import asyncio

import pytest

from pixgate.infra.cache.local import LocalLRUCache
from pixgate.infra.cache.result_cache import ResultCache
from pixgate.infra.cache.shared import ISharedTier, InMemorySharedTier, _day
from pixgate.infra.errors import ComputeFailed, InFlightAbandoned, JoinTimeout, StorageUnavailable


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenSharedTier(ISharedTier):
    """Shared tier whose backend is down."""

    async def get(self, key):
        raise StorageUnavailable("down")

    async def put(self, entry):
        raise StorageUnavailable("down")

    async def touch(self, key, now):
        raise StorageUnavailable("down")

    async def acquire_marker(self, key, token, ttl_seconds):
        raise StorageUnavailable("down")

    async def marker_exists(self, key):
        raise StorageUnavailable("down")

    async def release_marker(self, key, token):
        raise StorageUnavailable("down")

    async def sweep(self, stale_after_seconds, now):
        raise StorageUnavailable("down")


def _worker(shared: ISharedTier, **kwargs) -> ResultCache:
    kwargs.setdefault("poll_interval_sec", 0.01)
    kwargs.setdefault("join_timeout_sec", 2.0)
    local = LocalLRUCache(100, clock=kwargs["clock"]) if "clock" in kwargs else LocalLRUCache(100)
    return ResultCache(shared, local=local, **kwargs)


class CountingCompute:
    def __init__(self, value="result", delay: float = 0.05, error: Exception = None):
        self.value = value
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


@pytest.mark.asyncio
async def test_concurrent_callers_compute_once():
    shared = InMemorySharedTier()
    workers = [_worker(shared) for _ in range(3)]
    compute = CountingCompute({"url": "file:///out.webp"})

    results = await asyncio.gather(*(
        workers[i % 3].compute_or_join("k1", compute) for i in range(12)
    ))

    assert compute.calls == 1
    assert all(r == {"url": "file:///out.webp"} for r in results)
    assert sum(w.metrics.computations for w in workers) == 1
    assert not await shared.marker_exists("k1")


@pytest.mark.asyncio
async def test_failed_computation_is_not_cached_and_joiners_see_abandoned():
    shared = InMemorySharedTier()
    owner, joiner = _worker(shared), _worker(shared)
    compute = CountingCompute(error=RuntimeError("encoder crashed"))

    first = asyncio.create_task(owner.compute_or_join("k2", compute))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(joiner.compute_or_join("k2", compute))
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert type(results[0]) is ComputeFailed
    assert isinstance(results[0].cause, RuntimeError)
    assert isinstance(results[1], InFlightAbandoned)
    assert compute.calls == 1
    assert await shared.get("k2") is None
    assert not await shared.marker_exists("k2")


@pytest.mark.asyncio
async def test_join_times_out_when_owner_never_finishes():
    shared = InMemorySharedTier()
    await shared.acquire_marker("k3", "someone-else", 60)
    cache = _worker(shared)
    compute = CountingCompute()
    with pytest.raises(JoinTimeout):
        await cache.compute_or_join("k3", compute, timeout=0.05)
    assert compute.calls == 0


@pytest.mark.asyncio
async def test_abandoned_marker_expires_and_next_caller_computes():
    clock = FakeClock()
    shared = InMemorySharedTier(clock=clock)
    await shared.acquire_marker("k4", "crashed-worker", 60)
    clock.now += 61
    cache = _worker(shared, clock=clock)
    assert await cache.compute_or_join("k4", CountingCompute("fresh", delay=0)) == "fresh"


@pytest.mark.asyncio
async def test_shared_hit_is_promoted_to_local_tier():
    shared = InMemorySharedTier()
    a, b = _worker(shared), _worker(shared)
    await a.put("k5", {"url": "file:///k5.jpg"})

    assert (await b.get("k5")).payload == {"url": "file:///k5.jpg"}
    assert b.metrics.shared_hits == 1
    assert "k5" in b.local
    await b.get("k5")
    assert b.metrics.local_hits == 1


@pytest.mark.asyncio
async def test_get_or_compute_reports_cached_results():
    cache = _worker(InMemorySharedTier())
    compute = CountingCompute("v", delay=0)
    assert await cache.get_or_compute("k6", compute) == ("v", False)
    assert await cache.get_or_compute("k6", compute) == ("v", True)
    assert compute.calls == 1


@pytest.mark.asyncio
async def test_put_uses_format_class_ttl():
    cache = _worker(InMemorySharedTier(), base_ttl_seconds=100)
    entry = await cache.put("k7", "x", params={"format": "cr2", "output_format": "jpg"})
    assert entry.ttl_seconds == 400
    assert entry.format_class == "raw"


@pytest.mark.asyncio
async def test_shared_tier_outage_fails_open():
    cache = _worker(BrokenSharedTier())
    compute = CountingCompute("ok", delay=0)
    assert await cache.compute_or_join("k8", compute) == "ok"
    assert await cache.compute_or_join("k8", compute) == "ok"
    assert compute.calls == 1
    assert cache.metrics.shared_errors > 0


@pytest.mark.asyncio
async def test_sweep_removes_stale_entries_and_flushes_metrics():
    clock = FakeClock()
    shared = InMemorySharedTier(clock=clock)
    cache = _worker(shared, clock=clock, stale_after_seconds=3600)
    await cache.put("old", "x", ttl_seconds=10 * 86400)
    clock.now += 1800
    await cache.put("new", "y", ttl_seconds=10 * 86400)
    await cache.get("missing")
    clock.now += 2000

    assert await cache.sweep_once() == 1
    assert await shared.get("old") is None
    assert await shared.get("new") is not None

    assert (await shared.get_metrics(_day(clock.now)))["misses"] == 1
    summary = cache.metrics_summary()
    assert summary["misses"] == 1
    assert summary["local"]["entries"] == 2
