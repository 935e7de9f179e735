# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/windows.py
"""
Usage window resets.

Three windows are tracked per counter record:
  - hourly:  resets when the hour-aligned bucket (UTC) changes
  - daily:   resets when the calendar day (UTC midnight) changes
  - monthly: resets once 30 x 24h have elapsed since current_period_start.
             This is a rolling period tied to the billing cycle, not a calendar month.

Everything here is pure; storage applies the resets conditionally.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, Optional

MONTHLY_PERIOD = timedelta(days=30)


class WindowKind(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"


class ResetPolicy(str, Enum):
    ROLLING_30_DAYS = "rolling_30_days"
    # lifetime allowance: the monthly counter never resets
    NONE = "none"


@dataclass(frozen=True)
class CounterRecord:
    key: str
    monthly_used: int = 0
    daily_used: int = 0
    hourly_used: int = 0
    current_period_start: Optional[datetime] = None
    last_daily_reset: Optional[datetime] = None
    last_hourly_reset: Optional[datetime] = None
    last_operation_at: Optional[datetime] = None

    def used(self, kind: WindowKind) -> int:
        if kind is WindowKind.MONTHLY:
            return self.monthly_used
        if kind is WindowKind.DAILY:
            return self.daily_used
        return self.hourly_used

    def marker(self, kind: WindowKind) -> Optional[datetime]:
        if kind is WindowKind.MONTHLY:
            return self.current_period_start
        if kind is WindowKind.DAILY:
            return self.last_daily_reset
        return self.last_hourly_reset


def utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def floor_to_hour(dt: datetime) -> datetime:
    dt = utc(dt)
    return datetime(dt.year, dt.month, dt.day, dt.hour, tzinfo=timezone.utc)


def floor_to_day(dt: datetime) -> datetime:
    dt = utc(dt)
    return datetime(dt.year, dt.month, dt.day, tzinfo=timezone.utc)


def should_reset(kind: WindowKind, last_reset: Optional[datetime], now: datetime) -> bool:
    """
    True when the window anchored at `last_reset` must be reset at `now`.

    For MONTHLY, `last_reset` is the record's current_period_start.
    A missing marker is always due. A marker in a later bucket than `now`
    (clock skew between instances) is never due.
    """
    if last_reset is None:
        return True
    if kind is WindowKind.HOURLY:
        return floor_to_hour(last_reset) < floor_to_hour(now)
    if kind is WindowKind.DAILY:
        return floor_to_day(last_reset) < floor_to_day(now)
    if kind is WindowKind.MONTHLY:
        return utc(now) - utc(last_reset) >= MONTHLY_PERIOD
    raise ValueError(f"Unknown window kind: {kind!r}")


def due_resets(
    record: CounterRecord,
    now: datetime,
    *,
    reset_policy: ResetPolicy = ResetPolicy.ROLLING_30_DAYS,
) -> Dict[WindowKind, Optional[datetime]]:
    """
    Windows of `record` that must reset at `now`, mapped to the marker the
    reset is conditioned on (storage only resets if the marker is unchanged).
    """
    out: Dict[WindowKind, Optional[datetime]] = {}
    for kind in (WindowKind.MONTHLY, WindowKind.DAILY, WindowKind.HOURLY):
        marker = record.marker(kind)
        if kind is WindowKind.MONTHLY and reset_policy is ResetPolicy.NONE and marker is not None:
            continue
        if should_reset(kind, marker, now):
            out[kind] = marker
    return out


def apply_resets(record: CounterRecord, kinds: Iterable[WindowKind], now: datetime) -> CounterRecord:
    now = utc(now)
    changes = {}
    for kind in kinds:
        if kind is WindowKind.MONTHLY:
            changes.update(monthly_used=0, current_period_start=now)
        elif kind is WindowKind.DAILY:
            changes.update(daily_used=0, last_daily_reset=now)
        elif kind is WindowKind.HOURLY:
            changes.update(hourly_used=0, last_hourly_reset=now)
    return replace(record, **changes) if changes else record


def next_reset_at(kind: WindowKind, marker: Optional[datetime], now: datetime) -> datetime:
    """Instant the window next resets."""
    now = utc(now)
    if kind is WindowKind.HOURLY:
        return floor_to_hour(now) + timedelta(hours=1)
    if kind is WindowKind.DAILY:
        return floor_to_day(now) + timedelta(days=1)
    if marker is None:
        return now
    return utc(marker) + MONTHLY_PERIOD


def seconds_until_reset(kind: WindowKind, marker: Optional[datetime], now: datetime) -> int:
    return max(0, int((next_reset_at(kind, marker, now) - utc(now)).total_seconds()))
