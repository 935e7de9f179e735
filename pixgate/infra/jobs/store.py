# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/jobs/store.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pixgate.infra import serialization
from pixgate.infra.errors import StorageUnavailable
from pixgate.infra.jobs.models import Job, JobClass, JobState
from pixgate.infra.namespaces import REDIS, ns_key

# KEYS[1] = job hash
# ARGV[1] = progress
# returns stored progress, -1 for an unknown job
_LUA_PROGRESS_MAX = r"""
local cur = tonumber(redis.call('HGET', KEYS[1], 'progress') or '-1')
if cur < 0 then
  return -1
end
local p = tonumber(ARGV[1])
if p > cur then
  redis.call('HSET', KEYS[1], 'progress', p)
  return p
end
return cur
"""


def clamp_progress(progress: Any) -> int:
    return max(0, min(100, int(progress)))


class IJobStore(ABC):
    @abstractmethod
    async def save(self, job: Job) -> None: ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def mark_active(self, job_id: str, now: float) -> None: ...

    @abstractmethod
    async def update_progress(self, job_id: str, progress: int) -> int:
        """Raise progress (never lower it); returns the stored value."""

    @abstractmethod
    async def finish(
        self,
        job_id: str,
        state: JobState,
        *,
        now: float,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    async def purge_finished(self, older_than: float) -> int:
        """Delete completed/failed jobs finished before `older_than`."""

    async def close(self) -> None:
        return None


class InMemoryJobStore(IJobStore):
    def __init__(self):
        self._jobs: Dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    async def save(self, job):
        self._jobs[job.id] = job

    async def get(self, job_id):
        return self._jobs.get(job_id)

    async def mark_active(self, job_id, now):
        job = self._jobs.get(job_id)
        if job is not None:
            job.state = JobState.ACTIVE
            job.started_at = now

    async def update_progress(self, job_id, progress):
        job = self._jobs.get(job_id)
        if job is None:
            return -1
        job.progress = max(job.progress, clamp_progress(progress))
        return job.progress

    async def finish(self, job_id, state, *, now, result=None, error=None):
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.state = state
        job.finished_at = now
        job.result = result
        job.error = error
        if state is JobState.COMPLETED:
            job.progress = 100

    async def purge_finished(self, older_than):
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.state.finished and (job.finished_at or 0) < older_than
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)


class RedisJobStore(IJobStore):
    """
    Redis Keys:
      pixgate:jobs:job:{tenant}:{project}:{job_id}     hash, expires `retention_seconds` after finishing
      pixgate:jobs:job:{tenant}:{project}:finished     zset job_id -> finished_at
    """

    def __init__(self, redis: Redis, *, retention_seconds: int = 24 * 3600, namespace: Optional[str] = None):
        self.redis = redis
        self.retention_seconds = int(retention_seconds)
        self.ns = namespace or ns_key(REDIS.JOBS.RECORD_PREFIX)
        self._finished = f"{self.ns}:finished"

    def _k(self, job_id: str) -> str:
        return f"{self.ns}:{job_id}"

    async def _run(self, coro):
        try:
            return await coro
        except RedisError as e:
            raise StorageUnavailable(f"Job store unavailable: {e}") from e

    async def save(self, job):
        mapping = {
            "id": job.id,
            "job_class": job.job_class.value,
            "priority": job.priority,
            "tier": job.tier or "",
            "state": job.state.value,
            "progress": job.progress,
            "payload": serialization.dumps(job.payload, ensure_ascii=False),
            "created_at": repr(job.created_at),
        }
        await self._run(self.redis.hset(self._k(job.id), mapping=mapping))

    async def get(self, job_id):
        raw = await self._run(self.redis.hgetall(self._k(job_id)))
        if not raw:
            return None
        data = {(k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
                for k, v in raw.items()}
        return Job(
            id=data["id"],
            job_class=JobClass(data["job_class"]),
            priority=int(data["priority"]),
            payload=serialization.loads(data.get("payload") or "{}"),
            tier=data.get("tier") or None,
            state=JobState(data["state"]),
            progress=int(data.get("progress") or 0),
            result=serialization.loads(data["result"]) if data.get("result") else None,
            error=data.get("error") or None,
            created_at=float(data["created_at"]),
            started_at=float(data["started_at"]) if data.get("started_at") else None,
            finished_at=float(data["finished_at"]) if data.get("finished_at") else None,
        )

    async def mark_active(self, job_id, now):
        await self._run(self.redis.hset(self._k(job_id), mapping={"state": JobState.ACTIVE.value, "started_at": repr(now)}))

    async def update_progress(self, job_id, progress):
        res = await self._run(self.redis.eval(_LUA_PROGRESS_MAX, 1, self._k(job_id), str(clamp_progress(progress))))
        return int(res)

    async def finish(self, job_id, state, *, now, result=None, error=None):
        mapping = {"state": state.value, "finished_at": repr(now)}
        if result is not None:
            # TypeError here leaves the record untouched
            mapping["result"] = serialization.dumps(result, ensure_ascii=False)
        if error is not None:
            mapping["error"] = error
        if state is JobState.COMPLETED:
            mapping["progress"] = 100
        pipe = self.redis.pipeline()
        pipe.hset(self._k(job_id), mapping=mapping)
        if self.retention_seconds > 0:
            pipe.expire(self._k(job_id), self.retention_seconds)
        pipe.zadd(self._finished, {job_id: now})
        await self._run(pipe.execute())

    async def purge_finished(self, older_than):
        ids = await self._run(self.redis.zrangebyscore(self._finished, "-inf", older_than))
        if not ids:
            return 0
        ids = [i.decode() if isinstance(i, bytes) else i for i in ids]
        pipe = self.redis.pipeline()
        for job_id in ids:
            pipe.delete(self._k(job_id))
        pipe.zrem(self._finished, *ids)
        await self._run(pipe.execute())
        return len(ids)
