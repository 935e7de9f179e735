# SPDX-License-Identifier: MIT

import pytest

from pixgate.infra.quota.notifier import (
    QuotaWarningNotifier,
    WarningDedupCache,
    WarningSeverity,
    severity_for,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSender:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls = []

    async def __call__(self, **kwargs) -> bool:
        self.calls.append(kwargs)
        return self.result


def test_severity_thresholds():
    assert severity_for(None) is None
    assert severity_for(11) is None
    assert severity_for(10) is WarningSeverity.WARNING
    assert severity_for(5) is WarningSeverity.URGENT
    assert severity_for(0) is WarningSeverity.CRITICAL


@pytest.mark.asyncio
async def test_warning_is_deduplicated_until_resend_interval():
    clock = FakeClock()
    sender = RecordingSender()
    notifier = QuotaWarningNotifier(WarningDedupCache(clock=clock), sender=sender)
    kwargs = dict(identity_id="u1", email="u1@example.com", plan_name="Free")

    assert await notifier.maybe_notify(remaining=4, **kwargs) is WarningSeverity.URGENT
    assert await notifier.maybe_notify(remaining=3, **kwargs) is None
    assert len(sender.calls) == 1

    clock.now += 12 * 3600
    assert await notifier.maybe_notify(remaining=2, **kwargs) is WarningSeverity.URGENT
    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_each_severity_has_its_own_slot():
    sender = RecordingSender()
    notifier = QuotaWarningNotifier(WarningDedupCache(clock=FakeClock()), sender=sender)
    kwargs = dict(identity_id="u1", email="u1@example.com", plan_name="Free")
    await notifier.maybe_notify(remaining=8, **kwargs)
    await notifier.maybe_notify(remaining=0, **kwargs)
    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_failed_send_can_be_retried():
    sender = RecordingSender(result=False)
    notifier = QuotaWarningNotifier(WarningDedupCache(clock=FakeClock()), sender=sender)
    kwargs = dict(identity_id="u1", email="u1@example.com", plan_name="Free", remaining=0)
    assert await notifier.maybe_notify(**kwargs) is None
    sender.result = True
    assert await notifier.maybe_notify(**kwargs) is WarningSeverity.CRITICAL


@pytest.mark.asyncio
async def test_admin_is_copied_on_critical_only():
    sender = RecordingSender()
    notifier = QuotaWarningNotifier(
        WarningDedupCache(clock=FakeClock()), sender=sender, admin_email="ops@example.com"
    )
    kwargs = dict(identity_id="u1", email="u1@example.com", plan_name="Free")
    await notifier.maybe_notify(remaining=7, **kwargs)
    await notifier.maybe_notify(remaining=0, **kwargs)
    assert sender.calls[0]["cc"] is None
    assert sender.calls[1]["cc"] == ["ops@example.com"]


@pytest.mark.asyncio
async def test_scheduled_sends_finish_on_close():
    sender = RecordingSender()
    notifier = QuotaWarningNotifier(WarningDedupCache(clock=FakeClock()), sender=sender)
    task = notifier.schedule(identity_id="u1", email="u1@example.com", remaining=1, plan_name="Free")
    assert task is not None
    assert notifier.schedule(identity_id="u2", email=None, remaining=1, plan_name="Free") is None
    await notifier.close()
    assert len(sender.calls) == 1


def test_dedup_cache_is_bounded_and_purges_old_entries():
    clock = FakeClock()
    cache = WarningDedupCache(max_entries=2, max_age_seconds=100, clock=clock)
    cache.record("a_warning", WarningSeverity.WARNING, 9)
    cache.record("b_warning", WarningSeverity.WARNING, 9)
    cache.record("c_warning", WarningSeverity.WARNING, 9)
    assert len(cache) == 2
    assert cache.should_send("a_warning", WarningSeverity.WARNING) is True
    clock.now += 101
    assert cache.purge() == 2
    assert len(cache) == 0
