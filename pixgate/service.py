# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# pixgate/service.py
"""
Usage facade used by the request layer.

A request goes through check_operation_allowed() before work starts and
record_operation() after it succeeded. Quota and authorization outcomes come
back as OperationResult values; only infrastructure trouble raises.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pixgate.config import Settings, get_settings
from pixgate.infra.blob.store import LocalFileSystemBlobStore, RetryingBlobStore
from pixgate.infra.cache.fingerprint import fingerprint
from pixgate.infra.cache.local import LocalLRUCache
from pixgate.infra.cache.result_cache import ComputeFn, ResultCache
from pixgate.infra.cache.shared import InMemorySharedTier, RedisSharedTier
from pixgate.infra.errors import (
    AuthorizationDenied,
    InFlightAbandoned,
    JoinTimeout,
    LimitExceeded,
    StorageUnavailable,
    UnknownPlanError,
)
from pixgate.infra.jobs.conversion import ConversionJobHandler, IImageEncoder
from pixgate.infra.jobs.models import JobClass, JobStatus
from pixgate.infra.jobs.queue import JobDispatchQueue, JobHandler
from pixgate.infra.jobs.store import InMemoryJobStore, RedisJobStore
from pixgate.infra.namespaces import REDIS, ns_key
from pixgate.infra.quota.audit import AuditRecord, InMemoryAuditLog, OperationAuditLog, RedisAuditLog
from pixgate.infra.quota.identity import CounterKey, Identity, IdentityKind
from pixgate.infra.quota.ledger import QuotaLedger, UsageTotals
from pixgate.infra.quota.notifier import QuotaWarningNotifier, WarningDedupCache
from pixgate.infra.quota.policy import MB, Plan, check_file_size, get_plan
from pixgate.infra.quota.scope import ANONYMOUS, AuthState, ResolvedScope, ScopeResolver
from pixgate.infra.quota.store import InMemoryQuotaStore, RedisQuotaStore
from pixgate.infra.quota.windows import CounterRecord, WindowKind, next_reset_at, utc, utcnow
from pixgate.infra.redis.client import close_async_redis_clients, get_async_redis_client

logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    """Who is asking, from which page, for what."""
    identity: Identity
    route_path: str = "/"
    auth: AuthState = ANONYMOUS
    # product page isolation; when set, the counter is per page instead of per scope
    page_identifier: Optional[str] = None
    operation_type: str = "compression"
    file_format: Optional[str] = None
    file_size_bytes: Optional[int] = None
    interface: str = "web"
    requested_ops: int = 1
    client_claims: Dict[str, str] = field(default_factory=dict)
    operation_id: Optional[str] = None
    processing_time_ms: Optional[int] = None
    notify_email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class OperationResult:
    allowed: bool
    plan_id: Optional[str] = None
    scope: Optional[str] = None
    limit_type: Optional[str] = None
    remaining: Optional[int] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None
    # 'authorization_denied' | 'unknown_plan' | 'storage_unavailable'
    error: Optional[str] = None


@dataclass
class UsageStats:
    plan_id: str
    plan_name: str
    scope: str
    monthly_used: int
    monthly_limit: Optional[int]
    daily_used: int
    daily_limit: Optional[int]
    hourly_used: int
    hourly_limit: Optional[int]
    period_start: Optional[datetime] = None
    daily_resets_at: Optional[datetime] = None
    hourly_resets_at: Optional[datetime] = None


@dataclass
class CachedResult:
    key: str
    value: Any
    cached: bool


class UsageService:
    def __init__(
        self,
        *,
        ledger: QuotaLedger,
        cache: ResultCache,
        resolver: Optional[ScopeResolver] = None,
        jobs: Optional[JobDispatchQueue] = None,
        audit: Optional[OperationAuditLog] = None,
        notifier: Optional[QuotaWarningNotifier] = None,
        strict: bool = False,
        claim_ttl_seconds: int = 24 * 3600,
        join_retries: int = 2,
        close_redis: bool = False,
    ):
        self.ledger = ledger
        self.cache = cache
        self.resolver = resolver or ScopeResolver()
        self.jobs = jobs
        self.audit = audit
        self.notifier = notifier
        self.strict = strict
        self.claim_ttl_seconds = int(claim_ttl_seconds)
        self.join_retries = max(0, int(join_retries))
        # true when this service created the shared Redis clients it uses
        self.close_redis = close_redis

    # ---------- quota ----------

    @staticmethod
    def counter_key(ctx: OperationContext, resolved: ResolvedScope) -> CounterKey:
        if ctx.page_identifier:
            return CounterKey.for_page(ctx.identity, ctx.page_identifier)
        return CounterKey.for_scope(ctx.identity, resolved.scope)

    async def check_operation_allowed(self, ctx: OperationContext, *, now: Optional[datetime] = None) -> OperationResult:
        try:
            resolved = self.resolver.resolve(ctx.route_path, ctx.auth, ctx.client_claims)
            size = check_file_size(resolved.plan_id, ctx.file_size_bytes)
        except AuthorizationDenied as e:
            return OperationResult(allowed=False, scope=e.scope, message=e.message, error="authorization_denied")
        except UnknownPlanError as e:
            logger.error("Caller %s has an unknown plan: %s", ctx.identity.id, e.plan_id)
            return OperationResult(allowed=False, plan_id=e.plan_id, message=e.message, error="unknown_plan")

        if not size.allowed:
            return OperationResult(
                allowed=False,
                plan_id=resolved.plan_id,
                scope=resolved.scope,
                limit_type=size.limit_type.value,
                message=size.message,
            )

        key = self.counter_key(ctx, resolved)
        try:
            check = await self.ledger.check_allowed(key, resolved.plan_id, ctx.requested_ops, now=now)
        except StorageUnavailable as e:
            # fail closed: no usage data, no operation
            logger.error("Usage check for %s failed: %s", key, e)
            return OperationResult(
                allowed=False,
                plan_id=resolved.plan_id,
                scope=resolved.scope,
                message="Usage tracking is temporarily unavailable, please retry shortly",
                error="storage_unavailable",
            )

        if not check.allowed:
            logger.info("Denied %s for %s: %s", resolved.scope, key, check.message)
        return OperationResult(
            allowed=check.allowed,
            plan_id=resolved.plan_id,
            scope=resolved.scope,
            limit_type=check.limit_type.value if check.limit_type else None,
            remaining=check.remaining,
            message=check.message,
            retry_after=check.retry_after,
        )

    async def record_operation(self, ctx: OperationContext, *, now: Optional[datetime] = None) -> Optional[CounterRecord]:
        """
        Count a completed operation.

        Returns the counter record after the increment, or None when
        `ctx.operation_id` was already recorded.

        Raises:
            AuthorizationDenied: caller cannot use the route's scope
            LimitExceeded: strict mode only, the operation would pass a limit
            StorageUnavailable: counter storage unreachable
            UnknownPlanError: the caller's subscription plan is not in the plan table

        When counting fails the `operation_id` claim is dropped again, so the
        caller can retry the same operation.
        """
        resolved = self.resolver.resolve(ctx.route_path, ctx.auth, ctx.client_claims)
        plan = get_plan(resolved.plan_id)
        key = self.counter_key(ctx, resolved)
        now = utc(now or utcnow())

        token = None
        if ctx.operation_id:
            token = f"{ctx.identity.prefix()}{ctx.operation_id}"
            if not await self.ledger.store.claim_once(token, self.claim_ttl_seconds):
                logger.info("Operation %s for %s already recorded", ctx.operation_id, key)
                return None

        try:
            record = await self._count(ctx, plan, key, now)
        except Exception:
            if token is not None:
                await self._release_claim(token, key)
            raise

        await self._audit(ctx, resolved, key)
        self._maybe_warn(ctx, plan.id, record)
        return record

    async def _count(self, ctx: OperationContext, plan: Plan, key: CounterKey, now: datetime) -> CounterRecord:
        if self.strict:
            check, record = await self.ledger.try_consume(key, plan.id, ctx.requested_ops, now=now)
            if not check.allowed:
                raise LimitExceeded(
                    check.message or "Operation limit reached",
                    limit_type=check.limit_type.value if check.limit_type else "unknown",
                    remaining=check.remaining,
                    retry_after=check.retry_after,
                )
        else:
            record = await self.ledger.increment(key, ctx.requested_ops, reset_policy=plan.limits.reset_policy, now=now)
        return record

    async def _release_claim(self, token: str, key: CounterKey) -> None:
        try:
            await self.ledger.store.release_claim(token)
        except StorageUnavailable as e:
            # the claim expires after claim_ttl_seconds; until then a retry is reported as recorded
            logger.error("Could not release operation claim %s for %s: %s", token, key, e)

    async def _audit(self, ctx: OperationContext, resolved: ResolvedScope, key: CounterKey) -> None:
        if self.audit is None:
            return
        record = AuditRecord(
            identity_kind=ctx.identity.kind.value,
            identity_id=ctx.identity.id,
            scope=resolved.scope,
            isolation=key.isolation,
            plan_id=resolved.plan_id,
            operation_type=ctx.operation_type,
            file_format=ctx.file_format,
            file_size_mb=round(ctx.file_size_bytes / MB, 3) if ctx.file_size_bytes is not None else None,
            interface=ctx.interface,
            processing_time_ms=ctx.processing_time_ms,
            operation_id=ctx.operation_id,
        )
        try:
            await self.audit.append(record)
        except StorageUnavailable as e:
            # the counter is already incremented; losing the audit line must not fail the request
            logger.error("Audit append failed for %s: %s", key, e)

    def _maybe_warn(self, ctx: OperationContext, plan_id: str, record: CounterRecord) -> None:
        if self.notifier is None or not ctx.notify_email or ctx.identity.kind is not IdentityKind.USER:
            return
        plan = get_plan(plan_id)
        limit = plan.limits.monthly_operations
        if limit is None:
            return
        self.notifier.schedule(
            identity_id=ctx.identity.id,
            email=ctx.notify_email,
            remaining=max(0, limit - record.monthly_used),
            plan_name=plan.display_name,
            display_name=ctx.display_name,
        )

    async def get_usage_stats(self, ctx: OperationContext, *, now: Optional[datetime] = None) -> UsageStats:
        resolved = self.resolver.resolve(ctx.route_path, ctx.auth, ctx.client_claims)
        plan = get_plan(resolved.plan_id)
        now = utc(now or utcnow())
        record = await self.ledger.get_or_create(
            self.counter_key(ctx, resolved), reset_policy=plan.limits.reset_policy, now=now
        )
        return UsageStats(
            plan_id=plan.id,
            plan_name=plan.display_name,
            scope=resolved.scope,
            monthly_used=record.monthly_used,
            monthly_limit=plan.limits.monthly_operations,
            daily_used=record.daily_used,
            daily_limit=plan.limits.max_operations_per_day,
            hourly_used=record.hourly_used,
            hourly_limit=plan.limits.max_operations_per_hour,
            period_start=record.current_period_start,
            daily_resets_at=next_reset_at(WindowKind.DAILY, record.last_daily_reset, now),
            hourly_resets_at=next_reset_at(WindowKind.HOURLY, record.last_hourly_reset, now),
        )

    async def get_identity_usage(self, identity: Identity, *, now: Optional[datetime] = None) -> UsageTotals:
        """Totals across every scope and page the identity has used."""
        return await self.ledger.usage_for(identity, now=now)

    # ---------- result cache ----------

    async def get_cached_or_compute(
        self,
        params: Mapping[str, Any],
        compute_fn: ComputeFn,
        *,
        timeout: Optional[float] = None,
    ) -> CachedResult:
        """
        Cached conversion result for `params`, computing it once across workers.

        A join that ends without a result (the computing worker died or timed
        out) is retried up to `join_retries` times; the retry may become the
        computing worker itself. ComputeFailed from our own compute_fn is not
        retried.
        """
        key = fingerprint(params)
        attempt = 0
        while True:
            try:
                value, cached = await self.cache.get_or_compute(key, compute_fn, params=params, timeout=timeout)
                return CachedResult(key=key, value=value, cached=cached)
            except (InFlightAbandoned, JoinTimeout) as e:
                attempt += 1
                if attempt > self.join_retries:
                    raise
                logger.warning("Retrying %s after failed join (%d/%d): %s", key[:12], attempt, self.join_retries, e)

    # ---------- jobs ----------

    def _require_jobs(self) -> JobDispatchQueue:
        if self.jobs is None:
            raise RuntimeError("Job dispatch is not configured for this service")
        return self.jobs

    async def submit_job(self, payload: Dict[str, Any], tier: Optional[str] = None) -> str:
        return await self._require_jobs().submit(payload, tier)

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        return await self._require_jobs().get_status(job_id)

    # ---------- lifecycle ----------

    async def start(self) -> None:
        await self.cache.start()
        if self.jobs is not None:
            await self.jobs.start()
        if self.notifier is not None:
            await self.notifier.cache.start()
        logger.info("Usage service started (strict=%s)", self.strict)

    async def close(self) -> None:
        if self.jobs is not None:
            await self.jobs.stop()
        await self.cache.stop()
        if self.notifier is not None:
            await self.notifier.close()
            await self.notifier.cache.flush()
        await self.ledger.store.close()
        if self.close_redis:
            await close_async_redis_clients()
        logger.info("Usage service closed")


def create_usage_service(
    settings: Optional[Settings] = None,
    *,
    encoder: Optional[IImageEncoder] = None,
    job_handlers: Optional[Mapping[JobClass, JobHandler]] = None,
) -> UsageService:
    """
    Wire a UsageService from configuration.

    STORAGE_BACKEND=memory keeps everything in-process; anything else shares
    counters, cache, jobs and audit records through Redis. The job queue is
    only built when an encoder or explicit handlers are given.
    """
    s = settings or get_settings()
    tenant, project = s.TENANT, s.PROJECT

    if s.STORAGE_BACKEND == "memory":
        quota_store = InMemoryQuotaStore()
        shared = InMemorySharedTier()
        job_store = InMemoryJobStore()
        audit: OperationAuditLog = InMemoryAuditLog()
    else:
        redis = get_async_redis_client(s.REDIS_URL, max_connections=s.REDIS_MAX_CONNECTIONS)
        quota_store = RedisQuotaStore(
            redis,
            namespace=ns_key(REDIS.QUOTA.COUNTER_PREFIX, tenant=tenant, project=project),
            claims_namespace=ns_key(REDIS.QUOTA.OPERATION_CLAIM_PREFIX, tenant=tenant, project=project),
        )
        shared = RedisSharedTier(redis, tenant=tenant, project=project)
        job_store = RedisJobStore(
            redis,
            retention_seconds=s.JOB_RETENTION_SECONDS,
            namespace=ns_key(REDIS.JOBS.RECORD_PREFIX, tenant=tenant, project=project),
        )
        audit = RedisAuditLog(
            redis,
            key_prefix=ns_key(REDIS.AUDIT.OPERATIONS_PREFIX, tenant=tenant, project=project),
            retention_days=s.AUDIT_RETENTION_DAYS,
        )

    cache = ResultCache(
        shared,
        local=LocalLRUCache(s.CACHE_LOCAL_MAX_ENTRIES),
        base_ttl_seconds=s.CACHE_BASE_TTL_SECONDS,
        inflight_ttl_seconds=s.CACHE_INFLIGHT_TTL_SECONDS,
        join_timeout_sec=s.CACHE_JOIN_TIMEOUT_SECONDS,
        poll_interval_sec=s.CACHE_JOIN_POLL_SECONDS,
        stale_after_seconds=s.CACHE_STALE_AFTER_SECONDS,
        sweep_interval_sec=s.CACHE_SWEEP_INTERVAL_SECONDS,
    )

    jobs = None
    if job_handlers is None and encoder is not None:
        blobs = RetryingBlobStore(
            LocalFileSystemBlobStore(s.STORAGE_PATH),
            attempts=s.BLOB_RETRY_ATTEMPTS,
            base_delay_sec=s.BLOB_RETRY_BASE_DELAY_SECONDS,
        )
        handler = ConversionJobHandler(encoder, blobs)
        job_handlers = {jc: handler for jc in JobClass}
    if job_handlers is not None:
        jobs = JobDispatchQueue(
            job_handlers,
            store=job_store,
            concurrency={
                JobClass.RAW: s.JOB_RAW_CONCURRENCY,
                JobClass.STANDARD: s.JOB_STANDARD_CONCURRENCY,
                JobClass.BULK: s.JOB_BULK_CONCURRENCY,
            },
            retention_seconds=s.JOB_RETENTION_SECONDS,
            sweep_interval_sec=s.JOB_SWEEP_INTERVAL_SECONDS,
        )

    notifier = QuotaWarningNotifier(
        WarningDedupCache(max_entries=s.WARNING_CACHE_MAX_ENTRIES),
        enabled=s.WARNING_EMAILS_ENABLED,
        admin_email=s.ADMIN_EMAIL,
    )

    return UsageService(
        ledger=QuotaLedger(quota_store),
        cache=cache,
        jobs=jobs,
        audit=audit,
        notifier=notifier,
        strict=s.STRICT_QUOTA_ENFORCEMENT,
        claim_ttl_seconds=s.OPERATION_CLAIM_TTL_SECONDS,
        join_retries=s.CACHE_JOIN_RETRIES,
        close_redis=s.STORAGE_BACKEND != "memory",
    )
