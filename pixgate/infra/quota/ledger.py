# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/ledger.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from pixgate.infra.quota.identity import CounterKey, Identity
from pixgate.infra.quota.policy import LimitCheck, check_operation_limits, get_plan
from pixgate.infra.quota.store import IQuotaStore
from pixgate.infra.quota.windows import (
    CounterRecord,
    ResetPolicy,
    WindowKind,
    apply_resets,
    due_resets,
    seconds_until_reset,
    utc,
    utcnow,
)

logger = logging.getLogger(__name__)

# conditional resets that lost a race are re-read; this bounds the retries
_MAX_RESET_ROUNDS = 3

KeyLike = Union[CounterKey, str]


def _key(key: KeyLike) -> str:
    return key.render() if isinstance(key, CounterKey) else str(key)


def _with_retry_after(check: LimitCheck, record: CounterRecord, reset_policy: ResetPolicy, now: datetime) -> LimitCheck:
    if check.allowed or check.limit_type is None:
        return check
    kind = WindowKind(check.limit_type.value)
    if kind is WindowKind.MONTHLY and reset_policy is ResetPolicy.NONE:
        return check
    check.retry_after = seconds_until_reset(kind, record.marker(kind), now)
    return check


@dataclass
class UsageTotals:
    monthly_used: int = 0
    daily_used: int = 0
    hourly_used: int = 0
    counters: int = 0


class QuotaLedger:
    """
    Per-identity usage counters over hourly / daily / monthly windows.

    Check and increment are separate calls: two concurrent requests can both
    pass `check_allowed` before either increments, so limits are soft by a
    small margin under concurrency. `try_consume` is the strict alternative
    (a single conditional increment in the store).
    """

    def __init__(self, store: IQuotaStore):
        self.store = store

    async def get_or_create(
        self,
        key: KeyLike,
        *,
        reset_policy: ResetPolicy = ResetPolicy.ROLLING_30_DAYS,
        now: Optional[datetime] = None,
    ) -> CounterRecord:
        """
        Fetch (or lazily create) the record with every due window reset.

        Args:
            key: Counter key
            reset_policy: Plan reset policy (NONE keeps the monthly counter)
            now: Current time (for testing)
        """
        k = _key(key)
        now = utc(now or utcnow())
        record = await self.store.get_or_create(k, now=now)
        for _ in range(_MAX_RESET_ROUNDS):
            due = due_resets(record, now, reset_policy=reset_policy)
            if not due:
                break
            logger.debug("Resetting %s windows for %s", ",".join(kind.value for kind in due), k)
            record = await self.store.apply_resets(k, due, now=now)
        return record

    async def check_allowed(
        self,
        key: KeyLike,
        plan_id: str,
        requested_ops: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        plan = get_plan(plan_id)
        now = utc(now or utcnow())
        record = await self.get_or_create(key, reset_policy=plan.limits.reset_policy, now=now)
        check = check_operation_limits(
            plan_id,
            record.monthly_used,
            record.daily_used,
            record.hourly_used,
            requested_ops,
        )
        return _with_retry_after(check, record, plan.limits.reset_policy, now)

    async def increment(
        self,
        key: KeyLike,
        ops: int = 1,
        *,
        reset_policy: ResetPolicy = ResetPolicy.ROLLING_30_DAYS,
        now: Optional[datetime] = None,
    ) -> CounterRecord:
        if ops < 0:
            raise ValueError("ops must be non-negative")
        now = utc(now or utcnow())
        await self.get_or_create(key, reset_policy=reset_policy, now=now)
        return await self.store.increment(_key(key), int(ops), now=now)

    async def try_consume(
        self,
        key: KeyLike,
        plan_id: str,
        ops: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[LimitCheck, CounterRecord]:
        """Check and increment in one atomic store operation; the record is the stored state afterwards."""
        plan = get_plan(plan_id)
        now = utc(now or utcnow())
        await self.get_or_create(key, reset_policy=plan.limits.reset_policy, now=now)
        applied, record = await self.store.increment_if_within(
            _key(key), int(ops), plan.limits.ceilings(), now=now
        )
        if applied:
            after = check_operation_limits(plan_id, record.monthly_used, record.daily_used, record.hourly_used, 0)
            return LimitCheck(allowed=True, remaining=after.remaining), record
        check = check_operation_limits(plan_id, record.monthly_used, record.daily_used, record.hourly_used, ops)
        return _with_retry_after(check, record, plan.limits.reset_policy, now), record

    async def usage_for(self, identity: Identity, *, now: Optional[datetime] = None) -> UsageTotals:
        """Sum of every counter of `identity` (all scopes and pages); elapsed windows count as zero."""
        now = utc(now or utcnow())
        totals = UsageTotals()
        for stored in await self.store.list_prefix(identity.prefix()):
            record = apply_resets(stored, due_resets(stored, now), now)
            totals.monthly_used += record.monthly_used
            totals.daily_used += record.daily_used
            totals.hourly_used += record.hourly_used
            totals.counters += 1
        return totals
