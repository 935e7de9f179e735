# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/jobs/queue.py
"""
Priority job queue for expensive conversions.

One priority queue and a fixed worker pool per job class (RAW jobs get
fewer workers than standard ones). Within a class, lower priority value is
served first and equal priorities are FIFO.

The queue never retries: a handler failure ends the job as `failed` with
the reason on the record. Finished jobs are purged after the retention
window by a periodic sweep.
"""
import asyncio
import contextlib
import itertools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pixgate.infra.errors import JobFailed, LimitExceeded, StorageUnavailable
from pixgate.infra.jobs.models import (
    DEFAULT_CONCURRENCY,
    Job,
    JobClass,
    JobState,
    JobStatus,
    bulk_file_limit,
    job_class_for,
    priority_for,
)
from pixgate.infra.jobs.store import IJobStore, InMemoryJobStore

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    job_id: str
    payload: Dict[str, Any]
    tier: Optional[str]
    _report: Callable[[int], Awaitable[int]]

    async def report_progress(self, progress: int) -> int:
        """Returns the stored progress, which never goes down."""
        return await self._report(progress)


JobHandler = Callable[[JobContext], Awaitable[Optional[Dict[str, Any]]]]


class JobDispatchQueue:
    def __init__(
        self,
        handlers: Union[JobHandler, Mapping[JobClass, JobHandler]],
        *,
        store: Optional[IJobStore] = None,
        concurrency: Optional[Mapping[JobClass, int]] = None,
        retention_seconds: int = 24 * 3600,
        sweep_interval_sec: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        if callable(handlers):
            handlers = {jc: handlers for jc in JobClass}
        self.handlers: Dict[JobClass, JobHandler] = dict(handlers)
        self.store = store or InMemoryJobStore()
        self.concurrency: Dict[JobClass, int] = {**DEFAULT_CONCURRENCY, **(concurrency or {})}
        self.retention_seconds = int(retention_seconds)
        self.sweep_interval_sec = float(sweep_interval_sec)
        self._clock = clock
        self._seq = itertools.count()
        self._queues: Dict[JobClass, asyncio.PriorityQueue] = {jc: asyncio.PriorityQueue() for jc in self.handlers}
        self._active: Dict[JobClass, int] = {jc: 0 for jc in self.handlers}
        self._workers: List[asyncio.Task] = []
        self._sweeper: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # ---------- API ----------

    async def submit(
        self,
        payload: Dict[str, Any],
        tier: Optional[str] = None,
        *,
        job_class: Optional[JobClass] = None,
    ) -> str:
        job_class = job_class or job_class_for(payload)
        if job_class not in self.handlers:
            raise ValueError(f"No handler registered for {job_class.value} jobs")
        files = payload.get("files") or []
        limit = bulk_file_limit(tier)
        if len(files) > limit:
            raise LimitExceeded(
                f"Bulk requests on this plan are limited to {limit} files (got {len(files)})",
                limit_type="bulk_files",
                remaining=limit,
            )
        job = Job(
            id=uuid.uuid4().hex,
            job_class=job_class,
            priority=priority_for(tier),
            payload=dict(payload),
            tier=tier,
            created_at=self._clock(),
        )
        await self.store.save(job)
        self._queues[job_class].put_nowait((job.priority, next(self._seq), job.id))
        logger.info("Queued %s job %s (tier=%s priority=%d)", job_class.value, job.id, tier, job.priority)
        return job.id

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = await self.store.get(job_id)
        return job.status() if job else None

    def queue_stats(self) -> Dict[str, Any]:
        return {
            jc.value: {
                "queued": q.qsize(),
                "active": self._active[jc],
                "concurrency": self.concurrency.get(jc, 1),
            }
            for jc, q in self._queues.items()
        }

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        for q in self._queues.values():
            await q.join()

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._workers:
            return
        self._stop_event.clear()
        for jc in self._queues:
            for i in range(max(1, int(self.concurrency.get(jc, 1)))):
                self._workers.append(asyncio.create_task(self._worker(jc), name=f"jobs-{jc.value}-{i}"))
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="jobs-retention-sweep")
        logger.info("Job queue started: %s", {jc.value: self.concurrency.get(jc, 1) for jc in self._queues})

    async def stop(self) -> None:
        self._stop_event.set()
        tasks = self._workers + ([self._sweeper] if self._sweeper else [])
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._workers = []
        self._sweeper = None

    # ---------- workers ----------

    async def _worker(self, job_class: JobClass) -> None:
        q = self._queues[job_class]
        while True:
            _, _, job_id = await q.get()
            self._active[job_class] += 1
            try:
                await self._run(job_id, job_class)
            except StorageUnavailable:
                logger.exception("Job store unavailable while running job %s", job_id)
            except Exception as e:
                # the worker outlives any single job
                logger.exception("Unexpected error while running job %s", job_id)
                await self._mark_failed(job_id, f"{type(e).__name__}: {e}")
            finally:
                self._active[job_class] -= 1
                q.task_done()

    async def _run(self, job_id: str, job_class: JobClass) -> None:
        job = await self.store.get(job_id)
        if job is None:
            logger.warning("Dropping job %s: record no longer exists", job_id)
            return
        await self.store.mark_active(job_id, self._clock())

        async def report(progress: int) -> int:
            return await self.store.update_progress(job_id, progress)

        ctx = JobContext(job_id=job_id, payload=job.payload, tier=job.tier, _report=report)
        try:
            result = await self.handlers[job_class](ctx)
        except asyncio.CancelledError:
            with contextlib.suppress(StorageUnavailable):
                await self.store.finish(job_id, JobState.FAILED, now=self._clock(), error="cancelled")
            raise
        except Exception as e:
            reason = e.reason if isinstance(e, JobFailed) else f"{type(e).__name__}: {e}"
            logger.error("Job %s failed: %s", job_id, reason)
            await self.store.finish(job_id, JobState.FAILED, now=self._clock(), error=reason)
            return
        try:
            await self.store.finish(job_id, JobState.COMPLETED, now=self._clock(), result=result or {})
        except (TypeError, ValueError) as e:
            logger.error("Job %s produced a result that cannot be stored: %s", job_id, e)
            await self.store.finish(job_id, JobState.FAILED, now=self._clock(), error=f"Result could not be stored: {e}")
            return
        logger.info("Job %s completed", job_id)

    async def _mark_failed(self, job_id: str, reason: str) -> None:
        try:
            await self.store.finish(job_id, JobState.FAILED, now=self._clock(), error=reason)
        except StorageUnavailable as e:
            logger.error("Could not mark job %s failed: %s", job_id, e)

    # ---------- retention ----------

    async def sweep_once(self) -> int:
        purged = await self.store.purge_finished(self._clock() - self.retention_seconds)
        if purged:
            logger.info("Purged %d finished jobs", purged)
        return purged

    async def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.sweep_interval_sec)
            try:
                await self.sweep_once()
            except StorageUnavailable as e:
                logger.warning("Job retention sweep skipped: %s", e)
