# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/cache/result_cache.py
"""
Two-tier conversion result cache with single-flight computation.

Lookup: local LRU tier, then the shared tier (a shared hit is promoted into
the local tier).

compute_or_join: the first caller to set the in-flight marker for a key
computes; everybody else polls until the result appears, the marker
disappears without a result (InFlightAbandoned) or the join timeout passes
(JoinTimeout). The marker expires on its own so a crashed worker cannot
block a key forever.

Shared tier failures degrade to cache misses; they never fail a request.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from pixgate.infra.cache.entry import CacheEntry
from pixgate.infra.cache.fingerprint import params_format_class, ttl_for
from pixgate.infra.cache.local import LocalLRUCache
from pixgate.infra.cache.shared import ISharedTier
from pixgate.infra.errors import ComputeFailed, InFlightAbandoned, JoinTimeout, StorageUnavailable

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class CacheMetrics:
    local_hits: int = 0
    shared_hits: int = 0
    misses: int = 0
    computations: int = 0
    joins: int = 0
    compute_failures: int = 0
    shared_errors: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.local_hits + self.shared_hits + self.misses
        return (self.local_hits + self.shared_hits) / lookups if lookups else 0.0


class ResultCache:
    def __init__(
        self,
        shared: ISharedTier,
        *,
        local: Optional[LocalLRUCache] = None,
        base_ttl_seconds: int = 3600,
        inflight_ttl_seconds: int = 60,
        join_timeout_sec: float = 30.0,
        poll_interval_sec: float = 0.5,
        stale_after_seconds: int = 24 * 3600,
        sweep_interval_sec: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.shared = shared
        self.local = local or LocalLRUCache(clock=clock)
        self.base_ttl_seconds = int(base_ttl_seconds)
        self.inflight_ttl_seconds = int(inflight_ttl_seconds)
        self.join_timeout_sec = float(join_timeout_sec)
        self.poll_interval_sec = float(poll_interval_sec)
        self.stale_after_seconds = int(stale_after_seconds)
        self.sweep_interval_sec = float(sweep_interval_sec)
        self._clock = clock
        self.metrics = CacheMetrics()
        self._unflushed: Counter = Counter()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def _count(self, name: str, amount: int = 1) -> None:
        setattr(self.metrics, name, getattr(self.metrics, name) + amount)
        self._unflushed[name] += amount

    def _shared_failed(self, op: str, key: str, err: Exception) -> None:
        self._count("shared_errors")
        logger.warning("Shared cache %s failed for %s, continuing without it: %s", op, key[:12], err)

    # ---------- lookup ----------

    async def _lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self.local.get(key)
        if entry is not None:
            self._count("local_hits")
            return entry
        try:
            entry = await self.shared.get(key)
        except StorageUnavailable as e:
            self._shared_failed("get", key, e)
            return None
        if entry is None:
            return None
        now = self._clock()
        entry.touch(now)
        self.local.put(entry)
        self._count("shared_hits")
        try:
            await self.shared.touch(key, now)
        except StorageUnavailable as e:
            self._shared_failed("touch", key, e)
        return entry

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = await self._lookup(key)
        if entry is None:
            self._count("misses")
        return entry

    async def put(
        self,
        key: str,
        payload: Any,
        *,
        ttl_seconds: Optional[int] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> CacheEntry:
        if ttl_seconds is None:
            ttl_seconds = ttl_for(params, self.base_ttl_seconds) if params else self.base_ttl_seconds
        fc = params_format_class(params).value if params else "other"
        entry = CacheEntry.create(key, payload, ttl_seconds=ttl_seconds, format_class=fc, now=self._clock())
        self.local.put(entry)
        try:
            await self.shared.put(entry)
        except StorageUnavailable as e:
            self._shared_failed("put", key, e)
        except (TypeError, ValueError) as e:
            # payload the shared tier cannot encode; it stays in the local tier only
            self._shared_failed("put", key, e)
        return entry

    # ---------- single flight ----------

    async def compute_or_join(
        self,
        key: str,
        compute_fn: ComputeFn,
        *,
        params: Optional[Mapping[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Cached payload for `key`, computing it at most once across all workers.

        Raises:
            ComputeFailed: compute_fn raised (nothing cached, marker cleared)
            InFlightAbandoned: another worker's computation ended without a result
            JoinTimeout: another worker's computation did not finish in time
        """
        payload, _ = await self.get_or_compute(key, compute_fn, params=params, ttl_seconds=ttl_seconds, timeout=timeout)
        return payload

    async def get_or_compute(
        self,
        key: str,
        compute_fn: ComputeFn,
        *,
        params: Optional[Mapping[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Any, bool]:
        """Like compute_or_join; also tells whether the payload was already cached."""
        entry = await self.get(key)
        if entry is not None:
            return entry.payload, True

        token = uuid.uuid4().hex
        try:
            acquired = await self.shared.acquire_marker(key, token, self.inflight_ttl_seconds)
        except StorageUnavailable as e:
            self._shared_failed("acquire_marker", key, e)
            return await self._compute(key, compute_fn, token=None, params=params, ttl_seconds=ttl_seconds), False

        if acquired:
            return await self._compute(key, compute_fn, token=token, params=params, ttl_seconds=ttl_seconds), False

        self._count("joins")
        return await self._join(key, self.join_timeout_sec if timeout is None else float(timeout)), False

    async def _compute(
        self,
        key: str,
        compute_fn: ComputeFn,
        *,
        token: Optional[str],
        params: Optional[Mapping[str, Any]],
        ttl_seconds: Optional[int],
    ) -> Any:
        try:
            # a result may have landed between the miss and the marker
            entry = await self._lookup(key)
            if entry is not None:
                return entry.payload

            self._count("computations")
            try:
                result = compute_fn()
                if inspect.isawaitable(result):
                    result = await result
            except ComputeFailed:
                self._count("compute_failures")
                raise
            except Exception as e:
                self._count("compute_failures")
                raise ComputeFailed(f"Computation failed for {key[:12]}: {e}", cause=e) from e

            await self.put(key, result, ttl_seconds=ttl_seconds, params=params)
            return result
        finally:
            if token is not None:
                try:
                    await self.shared.release_marker(key, token)
                except StorageUnavailable as e:
                    # marker expires after inflight_ttl_seconds
                    self._shared_failed("release_marker", key, e)

    async def _join(self, key: str, timeout: float) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise JoinTimeout(f"Timed out after {timeout:.1f}s waiting for {key[:12]}")
            await asyncio.sleep(min(self.poll_interval_sec, remaining))

            entry = await self._lookup(key)
            if entry is not None:
                return entry.payload
            try:
                in_flight = await self.shared.marker_exists(key)
            except StorageUnavailable as e:
                self._shared_failed("marker_exists", key, e)
                raise InFlightAbandoned(f"Lost track of in-flight computation for {key[:12]}", cause=e) from e
            if not in_flight:
                entry = await self._lookup(key)
                if entry is not None:
                    return entry.payload
                raise InFlightAbandoned(f"In-flight computation for {key[:12]} ended without a result")

    # ---------- maintenance ----------

    async def sweep_once(self) -> int:
        removed = 0
        try:
            removed = await self.shared.sweep(self.stale_after_seconds, self._clock())
        except StorageUnavailable as e:
            self._shared_failed("sweep", "*", e)
        expired = self.local.purge_expired()
        if removed or expired:
            logger.info("Cache sweep removed %d shared and %d local entries", removed, expired)
        await self.flush_metrics()
        return removed

    async def flush_metrics(self) -> None:
        pending, self._unflushed = self._unflushed, Counter()
        for name, amount in pending.items():
            try:
                await self.shared.incr_metric(name, amount)
            except StorageUnavailable:
                logger.debug("Dropped cache metric %s=%d", name, amount)
                return

    def metrics_summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = asdict(self.metrics)
        out["hit_rate"] = round(self.metrics.hit_rate, 4)
        out["local"] = self.local.stats()
        return out

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="result-cache-sweep")

    async def stop(self) -> None:
        if self._task:
            self._stop_event.set()
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.flush_metrics()
        self.local.clear()

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.sweep_interval_sec)
            await self.sweep_once()
