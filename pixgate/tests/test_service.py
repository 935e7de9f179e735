# SPDX-License-Identifier: MIT

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pixgate.config import Settings
from pixgate.infra.cache.fingerprint import fingerprint
from pixgate.infra.errors import AuthorizationDenied, ComputeFailed, LimitExceeded, StorageUnavailable, UnknownPlanError
from pixgate.infra.jobs.models import JobClass
from pixgate.infra.quota.identity import Identity
from pixgate.infra.quota.policy import MB
from pixgate.infra.quota.scope import AuthState
from pixgate.service import OperationContext, create_usage_service
from pixgate.tests.helpers import FlakyQuotaStore, UnreachableQuotaStore, make_service

NOW = datetime(2024, 6, 3, 10, 20, tzinfo=timezone.utc)
FREE_USER = AuthState(user_id="u1")
PRO_USER = AuthState(user_id="u2", subscription_plan="pro", subscription_active=True)


def _anon(**kwargs) -> OperationContext:
    return OperationContext(identity=Identity.anonymous("anon_abc", "iphash"), **kwargs)


@pytest.mark.asyncio
async def test_anonymous_landing_page_is_allowed():
    service = make_service()
    res = await service.check_operation_allowed(_anon(route_path="/"), now=NOW)
    assert res.allowed is True
    assert (res.scope, res.plan_id) == ("main", "anonymous")
    assert res.remaining == 4


@pytest.mark.asyncio
async def test_protected_scope_returns_structured_denial():
    service = make_service()
    res = await service.check_operation_allowed(_anon(route_path="/compress-premium"), now=NOW)
    assert res.allowed is False
    assert res.error == "authorization_denied"
    assert res.scope == "pro"


@pytest.mark.asyncio
async def test_oversized_file_is_refused_before_counting():
    service = make_service()
    res = await service.check_operation_allowed(_anon(file_size_bytes=11 * MB), now=NOW)
    assert res.allowed is False
    assert res.limit_type == "file_size"


@pytest.mark.asyncio
async def test_hourly_limit_reports_retry_after():
    service = make_service()
    ctx = _anon(route_path="/")
    for _ in range(5):
        await service.record_operation(ctx, now=NOW)
    res = await service.check_operation_allowed(ctx, now=NOW)
    assert res.allowed is False
    assert res.limit_type == "hourly"
    assert res.retry_after == 40 * 60


@pytest.mark.asyncio
async def test_pages_are_counted_separately():
    service = make_service()
    user = Identity.user("u1")
    page_a = OperationContext(identity=user, route_path="/compress-free", auth=FREE_USER, page_identifier="/compress-free")
    page_b = OperationContext(identity=user, route_path="/compress-free", auth=FREE_USER, page_identifier="/web-compress")
    for _ in range(3):
        await service.record_operation(page_a, now=NOW)
    stats_a = await service.get_usage_stats(page_a, now=NOW)
    stats_b = await service.get_usage_stats(page_b, now=NOW)
    assert stats_a.hourly_used == 3
    assert stats_b.hourly_used == 0
    totals = await service.get_identity_usage(user, now=NOW)
    assert totals.monthly_used == 3 and totals.counters == 2


@pytest.mark.asyncio
async def test_operation_id_is_recorded_once():
    service = make_service()
    ctx = _anon(operation_id="op-42", operation_type="conversion", file_format="png", file_size_bytes=2 * MB)
    first = await service.record_operation(ctx, now=NOW)
    second = await service.record_operation(ctx, now=NOW)
    assert first.monthly_used == 1
    assert second is None

    records = await service.audit.records_for_day(datetime.now(timezone.utc).strftime("%Y%m%d"))
    assert len(records) == 1
    assert records[0].operation_type == "conversion"
    assert records[0].file_size_mb == 2.0
    assert records[0].scope == "main"


@pytest.mark.asyncio
async def test_strict_mode_refuses_the_overflowing_operation():
    service = make_service(strict=True)
    ctx = _anon()
    for _ in range(5):
        await service.record_operation(ctx, now=NOW)
    with pytest.raises(LimitExceeded) as exc:
        await service.record_operation(ctx, now=NOW)
    assert exc.value.limit_type == "hourly"
    assert exc.value.code == 429
    stats = await service.get_usage_stats(ctx, now=NOW)
    assert stats.hourly_used == 5


@pytest.mark.asyncio
async def test_failed_count_can_be_retried_with_the_same_operation_id():
    service = make_service(quota_store=FlakyQuotaStore(failures=1))
    ctx = _anon(operation_id="op-7")
    with pytest.raises(StorageUnavailable):
        await service.record_operation(ctx, now=NOW)

    record = await service.record_operation(ctx, now=NOW)
    assert record is not None
    assert record.monthly_used == 1
    assert await service.record_operation(ctx, now=NOW) is None


@pytest.mark.asyncio
async def test_operation_refused_in_strict_mode_is_not_marked_recorded():
    service = make_service(strict=True)
    for _ in range(5):
        await service.record_operation(_anon(), now=NOW)
    ctx = _anon(operation_id="op-9")
    with pytest.raises(LimitExceeded):
        await service.record_operation(ctx, now=NOW)

    later = NOW + timedelta(hours=1)
    record = await service.record_operation(ctx, now=later)
    assert record is not None
    assert record.hourly_used == 1
    assert record.monthly_used == 6


@pytest.mark.asyncio
async def test_record_on_protected_scope_raises():
    service = make_service()
    with pytest.raises(AuthorizationDenied):
        await service.record_operation(_anon(route_path="/dashboard"), now=NOW)


@pytest.mark.asyncio
async def test_unknown_subscription_plan_is_reported_and_not_counted():
    service = make_service()
    auth = AuthState(user_id="u9", subscription_plan="platinum", subscription_active=True)
    ctx = OperationContext(identity=Identity.user("u9"), route_path="/", auth=auth, operation_id="op-1")

    res = await service.check_operation_allowed(ctx, now=NOW)
    assert res.allowed is False
    assert res.error == "unknown_plan"

    with pytest.raises(UnknownPlanError):
        await service.record_operation(ctx, now=NOW)
    totals = await service.get_identity_usage(Identity.user("u9"), now=NOW)
    assert totals.counters == 0
    assert await service.ledger.store.claim_once("user:u9:op-1", 60) is True


@pytest.mark.asyncio
async def test_storage_outage_fails_closed():
    service = make_service(quota_store=UnreachableQuotaStore())
    res = await service.check_operation_allowed(_anon(), now=NOW)
    assert res.allowed is False
    assert res.error == "storage_unavailable"


@pytest.mark.asyncio
async def test_low_credit_warning_is_sent_to_users():
    service = make_service()
    ctx = OperationContext(
        identity=Identity.user("u1"),
        route_path="/compress-free",
        auth=FREE_USER,
        requested_ops=996,
        notify_email="u1@example.com",
        display_name="Ada",
    )
    record = await service.record_operation(ctx, now=NOW)
    assert record.monthly_used == 996
    await service.notifier.close()
    calls = service.notifier.sender.calls
    assert len(calls) == 1
    assert calls[0]["to_addrs"] == ["u1@example.com"]
    assert "Only 4 operations left" in calls[0]["subject"]


@pytest.mark.asyncio
async def test_usage_stats_for_subscriber():
    service = make_service()
    ctx = OperationContext(identity=Identity.user("u2"), route_path="/compress-premium", auth=PRO_USER)
    await service.record_operation(ctx, now=NOW)
    stats = await service.get_usage_stats(ctx, now=NOW)
    assert (stats.plan_id, stats.scope) == ("pro", "pro")
    assert stats.monthly_used == 1
    assert stats.monthly_limit == 10000
    assert stats.daily_limit is None
    assert stats.hourly_resets_at == datetime(2024, 6, 3, 11, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_cached_or_compute_marks_cache_hits():
    service = make_service()
    params = {"format": "png", "output_format": "webp", "quality": 80, "file_hash": "h1"}
    calls = []

    async def compute():
        calls.append(1)
        return {"url": "file:///h1.webp"}

    first = await service.get_cached_or_compute(params, compute)
    second = await service.get_cached_or_compute({**params, "request_id": "r2"}, compute)
    assert first.cached is False and second.cached is True
    assert first.key == second.key
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_abandoned_join_is_retried():
    service = make_service()
    params = {"format": "png", "output_format": "avif", "file_hash": "h2"}
    shared = service.cache.shared
    fp = fingerprint(params)
    await shared.acquire_marker(fp, "crashed-worker", 60)

    async def release_later():
        await asyncio.sleep(0.05)
        await shared.release_marker(fp, "crashed-worker")

    releaser = asyncio.create_task(release_later())
    result = await service.get_cached_or_compute(params, lambda: "recomputed")
    await releaser
    assert result.value == "recomputed"
    assert result.cached is False


@pytest.mark.asyncio
async def test_compute_failure_is_not_retried():
    service = make_service()
    calls = []

    def compute():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ComputeFailed):
        await service.get_cached_or_compute({"format": "png", "file_hash": "h3"}, compute)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_jobs_need_a_configured_queue():
    service = make_service()
    with pytest.raises(RuntimeError):
        await service.submit_job({"format": "png"}, "pro")


@pytest.mark.asyncio
async def test_memory_backed_service_runs_jobs():
    settings = Settings(STORAGE_BACKEND="memory", WARNING_EMAILS_ENABLED=False)

    async def handler(ctx):
        await ctx.report_progress(50)
        return {"ok": True}

    service = create_usage_service(settings, job_handlers={jc: handler for jc in JobClass})
    await service.start()
    try:
        job_id = await service.submit_job({"format": "png"}, "enterprise")
        await service.jobs.join()
        status = await service.get_job_status(job_id)
        assert status.status == "completed"
        assert status.result == {"ok": True}

        res = await service.check_operation_allowed(_anon())
        assert res.allowed is True
    finally:
        await service.close()
