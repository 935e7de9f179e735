# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/cache/shared.py

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pixgate.infra.cache.entry import CacheEntry
from pixgate.infra.errors import StorageUnavailable
from pixgate.infra.namespaces import REDIS, ns_key

logger = logging.getLogger(__name__)

METRICS_TTL_SECONDS = 7 * 86400
SWEEP_BATCH = 500

# KEYS[1] = marker key
# ARGV[1] = owner token
_LUA_RELEASE_MARKER = r"""
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d")


class ISharedTier(ABC):
    """Cache tier shared by every instance, plus the in-flight markers."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]: ...

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def touch(self, key: str, now: float) -> None:
        """Record an access (last_accessed, access_count)."""

    @abstractmethod
    async def acquire_marker(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Atomic set-if-absent of the in-flight marker."""

    @abstractmethod
    async def marker_exists(self, key: str) -> bool: ...

    @abstractmethod
    async def release_marker(self, key: str, token: str) -> bool:
        """Delete the marker only if `token` still owns it."""

    @abstractmethod
    async def sweep(self, stale_after_seconds: int, now: float) -> int:
        """Remove entries not accessed for `stale_after_seconds`."""

    async def incr_metric(self, name: str, amount: int = 1, now: Optional[float] = None) -> None:
        return None

    async def get_metrics(self, day: str) -> Dict[str, int]:
        return {}

    async def close(self) -> None:
        return None


@dataclass
class _Slot:
    entry: CacheEntry
    expires_at: float


class InMemorySharedTier(ISharedTier):
    """Single-process stand-in for the shared tier; every method is atomic on the event loop."""

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, _Slot] = {}
        self._markers: Dict[str, Tuple[str, float]] = {}
        self._metrics: Dict[str, Dict[str, int]] = {}

    async def get(self, key):
        slot = self._entries.get(key)
        if slot is None:
            return None
        if slot.entry.ttl_seconds > 0 and self._clock() >= slot.expires_at:
            del self._entries[key]
            return None
        e = slot.entry
        return CacheEntry(
            key=e.key, payload=e.payload, size_bytes=e.size_bytes, created_at=e.created_at,
            ttl_seconds=e.ttl_seconds, format_class=e.format_class,
            last_accessed=e.last_accessed, access_count=e.access_count,
        )

    async def put(self, entry):
        expires_at = self._clock() + entry.ttl_seconds
        stored = CacheEntry(
            key=entry.key, payload=entry.payload, size_bytes=entry.size_bytes, created_at=entry.created_at,
            ttl_seconds=entry.ttl_seconds, format_class=entry.format_class,
            last_accessed=entry.last_accessed, access_count=entry.access_count,
        )
        self._entries[entry.key] = _Slot(stored, expires_at)

    async def touch(self, key, now):
        slot = self._entries.get(key)
        if slot is not None:
            slot.entry.touch(now)

    def _live_marker(self, key: str) -> Optional[str]:
        marker = self._markers.get(key)
        if marker is None:
            return None
        token, expires_at = marker
        if self._clock() >= expires_at:
            del self._markers[key]
            return None
        return token

    async def acquire_marker(self, key, token, ttl_seconds):
        if self._live_marker(key) is not None:
            return False
        self._markers[key] = (token, self._clock() + ttl_seconds)
        return True

    async def marker_exists(self, key):
        return self._live_marker(key) is not None

    async def release_marker(self, key, token):
        if self._live_marker(key) == token:
            del self._markers[key]
            return True
        return False

    async def sweep(self, stale_after_seconds, now):
        stale = [
            k for k, slot in self._entries.items()
            if now - slot.entry.last_accessed > stale_after_seconds
            or (slot.entry.ttl_seconds > 0 and now >= slot.expires_at)
        ]
        for k in stale:
            del self._entries[k]
        return len(stale)

    async def incr_metric(self, name, amount=1, now=None):
        bucket = self._metrics.setdefault(_day(self._clock() if now is None else now), {})
        bucket[name] = bucket.get(name, 0) + int(amount)

    async def get_metrics(self, day):
        return dict(self._metrics.get(day, {}))


class RedisSharedTier(ISharedTier):
    """
    Redis shared tier.

    Redis Keys:
      pixgate:cache:result:{tenant}:{project}:{fingerprint}     entry JSON, EX = entry TTL
      pixgate:cache:meta:{tenant}:{project}:{fingerprint}       hash {la, ac}, same TTL
      pixgate:cache:index:{tenant}:{project}                    zset fingerprint -> last access
      pixgate:cache:inflight:{tenant}:{project}:{fingerprint}   owner token, EX = marker TTL
      pixgate:cache:metrics:{tenant}:{project}:{YYYYMMDD}       hash of daily counters
    """

    def __init__(self, redis: Redis, *, tenant: Optional[str] = None, project: Optional[str] = None):
        self.redis = redis
        self._result_ns = ns_key(REDIS.CACHE.RESULT_PREFIX, tenant=tenant, project=project)
        self._meta_ns = ns_key(REDIS.CACHE.META_PREFIX, tenant=tenant, project=project)
        self._index = ns_key(REDIS.CACHE.ACCESS_INDEX, tenant=tenant, project=project)
        self._inflight_ns = ns_key(REDIS.CACHE.INFLIGHT_PREFIX, tenant=tenant, project=project)
        self._metrics_ns = ns_key(REDIS.CACHE.METRICS_PREFIX, tenant=tenant, project=project)

    def _key(self, key: str) -> str:
        return f"{self._result_ns}:{key}"

    def _meta(self, key: str) -> str:
        return f"{self._meta_ns}:{key}"

    def _marker(self, key: str) -> str:
        return f"{self._inflight_ns}:{key}"

    async def get(self, key):
        try:
            pipe = self.redis.pipeline()
            pipe.get(self._key(key))
            pipe.hmget(self._meta(key), "la", "ac")
            raw, (la, ac) = await pipe.execute()
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e
        if raw is None:
            return None
        return CacheEntry.from_json(
            raw,
            last_accessed=float(la) if la is not None else None,
            access_count=int(ac) if ac is not None else 0,
        )

    async def put(self, entry):
        ttl = max(1, int(entry.ttl_seconds))
        pipe = self.redis.pipeline()
        pipe.set(self._key(entry.key), entry.to_json(), ex=ttl)
        pipe.hset(self._meta(entry.key), mapping={"la": repr(entry.last_accessed), "ac": entry.access_count})
        pipe.expire(self._meta(entry.key), ttl)
        pipe.zadd(self._index, {entry.key: entry.last_accessed})
        try:
            await pipe.execute()
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e

    async def touch(self, key, now):
        pipe = self.redis.pipeline()
        pipe.hincrby(self._meta(key), "ac", 1)
        pipe.hset(self._meta(key), "la", repr(now))
        pipe.zadd(self._index, {key: now}, xx=True)
        try:
            await pipe.execute()
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e

    async def acquire_marker(self, key, token, ttl_seconds):
        try:
            return bool(await self.redis.set(self._marker(key), token, nx=True, ex=max(1, int(ttl_seconds))))
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e

    async def marker_exists(self, key):
        try:
            return bool(await self.redis.exists(self._marker(key)))
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e

    async def release_marker(self, key, token):
        try:
            return bool(await self.redis.eval(_LUA_RELEASE_MARKER, 1, self._marker(key), token))
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e

    async def sweep(self, stale_after_seconds, now):
        cutoff = now - stale_after_seconds
        removed = 0
        try:
            while True:
                batch = await self.redis.zrangebyscore(self._index, "-inf", cutoff, start=0, num=SWEEP_BATCH)
                if not batch:
                    break
                keys = [k.decode() if isinstance(k, bytes) else k for k in batch]
                pipe = self.redis.pipeline()
                for k in keys:
                    pipe.delete(self._key(k), self._meta(k))
                pipe.zrem(self._index, *keys)
                await pipe.execute()
                removed += len(keys)
                if len(keys) < SWEEP_BATCH:
                    break
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e
        return removed

    async def incr_metric(self, name, amount=1, now=None):
        key = f"{self._metrics_ns}:{_day(time.time() if now is None else now)}"
        pipe = self.redis.pipeline()
        pipe.hincrby(key, name, int(amount))
        pipe.expire(key, METRICS_TTL_SECONDS)
        try:
            await pipe.execute()
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e

    async def get_metrics(self, day):
        try:
            raw = await self.redis.hgetall(f"{self._metrics_ns}:{day}")
        except RedisError as e:
            raise StorageUnavailable(f"Shared cache unavailable: {e}") from e
        out = {}
        for k, v in (raw or {}).items():
            out[k.decode() if isinstance(k, bytes) else k] = int(v)
        return out
