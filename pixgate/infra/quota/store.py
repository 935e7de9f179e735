# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/store.py
"""
Counter storage.

Every mutation is a single atomic primitive of the store (one Lua script in
Redis, one critical section in memory). Callers never write back a record
they read earlier.
"""
from __future__ import annotations

import asyncio
import heapq
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pixgate.infra.errors import StorageUnavailable
from pixgate.infra.namespaces import REDIS, ns_key
from pixgate.infra.quota.windows import CounterRecord, WindowKind, apply_resets, utc

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)

# marker values travel as integer epoch microseconds so a marker read back
# compares exactly equal in the conditional reset
def _to_us(dt: datetime) -> int:
    return (utc(dt) - _EPOCH) // _MICROSECOND

def _from_us(raw) -> Optional[datetime]:
    if raw is None or raw == b"" or raw == "":
        return None
    return _EPOCH + timedelta(microseconds=int(raw))

def _int(raw) -> int:
    return int(raw) if raw not in (None, b"", "") else 0

def _glob_escape(s: str) -> str:
    return "".join("\\" + ch if ch in "*?[]\\" else ch for ch in s)

_FIELDS = ("m", "d", "h", "ps", "dr", "hr", "lo")


def _strs(*items) -> list[str]:
    return [str(x) for x in items]


# --------- Lua scripts ---------
# KEYS[1] = counter hash
# ARGV = [now_us]
_LUA_GET_OR_CREATE = r"""
local k = KEYS[1]
local now = ARGV[1]
if redis.call('EXISTS', k) == 0 then
  redis.call('HSET', k, 'm', 0, 'd', 0, 'h', 0, 'ps', now, 'dr', now, 'hr', now)
end
return redis.call('HMGET', k, 'm', 'd', 'h', 'ps', 'dr', 'hr', 'lo')
"""

# Conditional window reset: a window is zeroed only while its marker still
# holds the value the caller observed, so one boundary is reset once.
# KEYS[1] = counter hash
# ARGV = [now_us, expected_ps, expected_dr, expected_hr]
#   '-'  leave the window alone
#   ''   reset only if the marker is missing
_LUA_APPLY_RESETS = r"""
local k = KEYS[1]
local now = ARGV[1]

local function reset(used, marker, expected)
  if expected == '-' then return end
  local cur = redis.call('HGET', k, marker)
  if (not cur and expected == '') or (cur and expected ~= '' and tonumber(cur) == tonumber(expected)) then
    redis.call('HSET', k, used, 0, marker, now)
  end
end

reset('m', 'ps', ARGV[2])
reset('d', 'dr', ARGV[3])
reset('h', 'hr', ARGV[4])
return redis.call('HMGET', k, 'm', 'd', 'h', 'ps', 'dr', 'hr', 'lo')
"""

# KEYS[1] = counter hash
# ARGV = [ops, now_us]
_LUA_INCREMENT = r"""
local k = KEYS[1]
local ops = tonumber(ARGV[1])
local now = ARGV[2]
redis.call('HSETNX', k, 'ps', now)
redis.call('HSETNX', k, 'dr', now)
redis.call('HSETNX', k, 'hr', now)
redis.call('HINCRBY', k, 'm', ops)
redis.call('HINCRBY', k, 'd', ops)
redis.call('HINCRBY', k, 'h', ops)
redis.call('HSET', k, 'lo', now)
return redis.call('HMGET', k, 'm', 'd', 'h', 'ps', 'dr', 'hr', 'lo')
"""

# Increment only if no ceiling would be exceeded.
# KEYS[1] = counter hash
# ARGV = [ops, now_us, cap_m, cap_d, cap_h]   ('' = unlimited)
# returns {applied(0|1), m, d, h, ps, dr, hr, lo}
_LUA_INCREMENT_IF_WITHIN = r"""
local k = KEYS[1]
local ops = tonumber(ARGV[1])
local now = ARGV[2]
redis.call('HSETNX', k, 'ps', now)
redis.call('HSETNX', k, 'dr', now)
redis.call('HSETNX', k, 'hr', now)

local fields = {'m', 'd', 'h'}
for i, f in ipairs(fields) do
  local cap = ARGV[i + 2]
  if cap ~= '' then
    local used = tonumber(redis.call('HGET', k, f) or '0')
    if used + ops > tonumber(cap) then
      local vals = redis.call('HMGET', k, 'm', 'd', 'h', 'ps', 'dr', 'hr', 'lo')
      table.insert(vals, 1, 0)
      return vals
    end
  end
end

redis.call('HINCRBY', k, 'm', ops)
redis.call('HINCRBY', k, 'd', ops)
redis.call('HINCRBY', k, 'h', ops)
redis.call('HSET', k, 'lo', now)
local vals = redis.call('HMGET', k, 'm', 'd', 'h', 'ps', 'dr', 'hr', 'lo')
table.insert(vals, 1, 1)
return vals
"""


class IQuotaStore(ABC):
    """Counter records keyed by a rendered CounterKey."""

    @abstractmethod
    async def get_or_create(self, key: str, *, now: datetime) -> CounterRecord:
        """Existing record, or a new one at zero with every marker = now."""

    @abstractmethod
    async def apply_resets(
        self, key: str, expected: Dict[WindowKind, Optional[datetime]], *, now: datetime
    ) -> CounterRecord:
        """Zero each window whose marker still equals `expected[kind]`; set its marker to now."""

    @abstractmethod
    async def increment(self, key: str, ops: int, *, now: datetime) -> CounterRecord:
        """Atomically add `ops` to all three counters."""

    @abstractmethod
    async def increment_if_within(
        self, key: str, ops: int, ceilings: Dict[WindowKind, Optional[int]], *, now: datetime
    ) -> Tuple[bool, CounterRecord]:
        """Atomically add `ops` unless a finite ceiling would be exceeded."""

    @abstractmethod
    async def list_prefix(self, prefix: str) -> List[CounterRecord]:
        """Every record whose key starts with `prefix`."""

    @abstractmethod
    async def claim_once(self, token: str, ttl_seconds: int) -> bool:
        """Set-if-absent with expiry; True for the first claimant only."""

    @abstractmethod
    async def release_claim(self, token: str) -> None:
        """Drop a claim so the same token can be claimed again."""

    async def close(self) -> None:
        return None


class InMemoryQuotaStore(IQuotaStore):
    """Process-local store for single-instance deployments and tests."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._records: Dict[str, CounterRecord] = {}
        self._claims: Dict[str, float] = {}
        # (expires_at, token), oldest first; entries of re-claimed tokens go stale and are skipped
        self._claim_expiry: List[Tuple[float, str]] = []
        self._clock = clock
        self._lock = asyncio.Lock()

    def _create(self, key: str, now: datetime) -> CounterRecord:
        now = utc(now)
        rec = CounterRecord(key=key, current_period_start=now, last_daily_reset=now, last_hourly_reset=now)
        self._records[key] = rec
        return rec

    async def get_or_create(self, key: str, *, now: datetime) -> CounterRecord:
        async with self._lock:
            return self._records.get(key) or self._create(key, now)

    async def apply_resets(self, key, expected, *, now):
        async with self._lock:
            rec = self._records.get(key) or self._create(key, now)
            kinds = [kind for kind, marker in expected.items() if rec.marker(kind) == marker]
            rec = apply_resets(rec, kinds, now)
            self._records[key] = rec
            return rec

    def _add(self, rec: CounterRecord, ops: int, now: datetime) -> CounterRecord:
        return replace(
            rec,
            monthly_used=rec.monthly_used + ops,
            daily_used=rec.daily_used + ops,
            hourly_used=rec.hourly_used + ops,
            last_operation_at=utc(now),
        )

    async def increment(self, key, ops, *, now):
        async with self._lock:
            rec = self._records.get(key) or self._create(key, now)
            rec = self._add(rec, int(ops), now)
            self._records[key] = rec
            return rec

    async def increment_if_within(self, key, ops, ceilings, *, now):
        async with self._lock:
            rec = self._records.get(key) or self._create(key, now)
            for kind, cap in ceilings.items():
                if cap is not None and rec.used(kind) + int(ops) > cap:
                    return False, rec
            rec = self._add(rec, int(ops), now)
            self._records[key] = rec
            return True, rec

    async def list_prefix(self, prefix):
        async with self._lock:
            return [rec for key, rec in self._records.items() if key.startswith(prefix)]

    def _prune_claims(self, now: float) -> None:
        while self._claim_expiry and self._claim_expiry[0][0] <= now:
            expires, token = heapq.heappop(self._claim_expiry)
            if self._claims.get(token) == expires:
                del self._claims[token]

    async def claim_once(self, token, ttl_seconds):
        now = self._clock()
        async with self._lock:
            self._prune_claims(now)
            if token in self._claims:
                return False
            expires = now + ttl_seconds
            self._claims[token] = expires
            heapq.heappush(self._claim_expiry, (expires, token))
            return True

    async def release_claim(self, token):
        async with self._lock:
            self._claims.pop(token, None)


class RedisQuotaStore(IQuotaStore):
    """
    Redis-backed counters, one hash per counter key.

    Redis Keys:
      pixgate:quota:counter:{tenant}:{project}:{kind}:{id}:{axis}:{isolation}
      pixgate:quota:op:{tenant}:{project}:{operation_id}

    Example:
      pixgate:quota:counter:home:default-project:anon:anon_3f2a9c0d11e4b7a8:scope:main
    """

    def __init__(
        self,
        redis: Redis,
        *,
        namespace: Optional[str] = None,
        claims_namespace: Optional[str] = None,
    ):
        self.r = redis
        self.ns = namespace or ns_key(REDIS.QUOTA.COUNTER_PREFIX)
        self.claims_ns = claims_namespace or ns_key(REDIS.QUOTA.OPERATION_CLAIM_PREFIX)

    def _k(self, key: str) -> str:
        return f"{self.ns}:{key}"

    def _record(self, key: str, vals: Sequence) -> CounterRecord:
        m, d, h, ps, dr, hr, lo = (list(vals) + [None] * len(_FIELDS))[:len(_FIELDS)]
        return CounterRecord(
            key=key,
            monthly_used=_int(m),
            daily_used=_int(d),
            hourly_used=_int(h),
            current_period_start=_from_us(ps),
            last_daily_reset=_from_us(dr),
            last_hourly_reset=_from_us(hr),
            last_operation_at=_from_us(lo),
        )

    async def _eval(self, script: str, key: str, *args):
        try:
            return await self.r.eval(script, 1, *_strs(self._k(key)), *_strs(*args))
        except RedisError as e:
            logger.error("Quota store unavailable for %s: %s", key, e)
            raise StorageUnavailable(f"Quota store unavailable: {e}") from e

    async def get_or_create(self, key, *, now):
        vals = await self._eval(_LUA_GET_OR_CREATE, key, _to_us(now))
        return self._record(key, vals)

    async def apply_resets(self, key, expected, *, now):
        def exp(kind: WindowKind) -> str:
            if kind not in expected:
                return "-"
            marker = expected[kind]
            return "" if marker is None else str(_to_us(marker))

        vals = await self._eval(
            _LUA_APPLY_RESETS, key,
            _to_us(now), exp(WindowKind.MONTHLY), exp(WindowKind.DAILY), exp(WindowKind.HOURLY),
        )
        return self._record(key, vals)

    async def increment(self, key, ops, *, now):
        vals = await self._eval(_LUA_INCREMENT, key, int(ops), _to_us(now))
        return self._record(key, vals)

    async def increment_if_within(self, key, ops, ceilings, *, now):
        def cap(kind: WindowKind) -> str:
            value = ceilings.get(kind)
            return "" if value is None else str(int(value))

        res = await self._eval(
            _LUA_INCREMENT_IF_WITHIN, key,
            int(ops), _to_us(now), cap(WindowKind.MONTHLY), cap(WindowKind.DAILY), cap(WindowKind.HOURLY),
        )
        return bool(int(res[0])), self._record(key, res[1:])

    async def list_prefix(self, prefix):
        match = _glob_escape(self._k(prefix)) + "*"
        strip = len(self.ns) + 1
        out: List[CounterRecord] = []
        try:
            async for raw_key in self.r.scan_iter(match=match, count=200):
                full = raw_key.decode() if isinstance(raw_key, bytes) else raw_key
                vals = await self.r.hmget(full, *_FIELDS)
                if any(v is not None for v in vals):
                    out.append(self._record(full[strip:], vals))
        except RedisError as e:
            raise StorageUnavailable(f"Quota store unavailable: {e}") from e
        return out

    async def claim_once(self, token, ttl_seconds):
        try:
            return bool(await self.r.set(f"{self.claims_ns}:{token}", "1", nx=True, ex=int(ttl_seconds)))
        except RedisError as e:
            raise StorageUnavailable(f"Quota store unavailable: {e}") from e

    async def release_claim(self, token):
        try:
            await self.r.delete(f"{self.claims_ns}:{token}")
        except RedisError as e:
            raise StorageUnavailable(f"Quota store unavailable: {e}") from e
