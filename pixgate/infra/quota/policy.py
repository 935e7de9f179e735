# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/policy.py
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pixgate.infra.errors import UnknownPlanError
from pixgate.infra.quota.windows import ResetPolicy, WindowKind

"""
Plan limits (operations per window) and the limit-check predicate.
None = unlimited for that dimension.
"""

MB = 1024 * 1024


class LimitType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"
    FILE_SIZE = "file_size"


@dataclass(frozen=True)
class PlanLimits:
    monthly_operations: Optional[int] = None
    max_operations_per_day: Optional[int] = None
    max_operations_per_hour: Optional[int] = None
    reset_policy: ResetPolicy = ResetPolicy.ROLLING_30_DAYS
    max_file_size_bytes: Optional[int] = None

    def limit_for(self, kind: WindowKind) -> Optional[int]:
        if kind is WindowKind.MONTHLY:
            return self.monthly_operations
        if kind is WindowKind.DAILY:
            return self.max_operations_per_day
        return self.max_operations_per_hour

    def ceilings(self) -> Dict[WindowKind, Optional[int]]:
        return {kind: self.limit_for(kind) for kind in WindowKind}


@dataclass(frozen=True)
class Plan:
    id: str
    display_name: str
    limits: PlanLimits


PLANS: Dict[str, Plan] = {
    "anonymous": Plan(
        id="anonymous",
        display_name="Anonymous",
        limits=PlanLimits(monthly_operations=500, max_operations_per_day=25,
                          max_operations_per_hour=5, max_file_size_bytes=10 * MB),
    ),
    "free": Plan(
        id="free",
        display_name="Free",
        limits=PlanLimits(monthly_operations=1000, max_operations_per_day=100,
                          max_operations_per_hour=25, max_file_size_bytes=10 * MB),
    ),
    "cr2-free": Plan(
        id="cr2-free",
        display_name="RAW Converter Free",
        limits=PlanLimits(monthly_operations=100, max_operations_per_day=10,
                          max_operations_per_hour=None, max_file_size_bytes=100 * MB),
    ),
    "test_premium": Plan(
        id="test_premium",
        display_name="Test Premium",
        limits=PlanLimits(monthly_operations=300, max_operations_per_day=None,
                          max_operations_per_hour=None, reset_policy=ResetPolicy.NONE,
                          max_file_size_bytes=75 * MB),
    ),
    "pro": Plan(
        id="pro",
        display_name="Pro",
        limits=PlanLimits(monthly_operations=10000, max_operations_per_day=None,
                          max_operations_per_hour=1000, max_file_size_bytes=75 * MB),
    ),
    "enterprise": Plan(
        id="enterprise",
        display_name="Enterprise",
        limits=PlanLimits(monthly_operations=50000, max_operations_per_day=None,
                          max_operations_per_hour=None, max_file_size_bytes=200 * MB),
    ),
}


def get_plan(plan_id: str) -> Plan:
    plan = PLANS.get(plan_id)
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan


@dataclass
class LimitCheck:
    allowed: bool
    limit_type: Optional[LimitType] = None
    # minimum headroom across finite windows; None = every window unlimited
    remaining: Optional[int] = None
    message: Optional[str] = None
    # seconds until the violated window resets
    retry_after: Optional[int] = None


# shortest window is reported first when several are exceeded
_CHECK_ORDER: Tuple[WindowKind, ...] = (WindowKind.HOURLY, WindowKind.DAILY, WindowKind.MONTHLY)


def check_operation_limits(
    plan_id: str,
    monthly_used: int,
    daily_used: int,
    hourly_used: int,
    requested_ops: int = 1,
) -> LimitCheck:
    """
    Check `requested_ops` more operations against the plan's windows.

    `remaining` is the smallest headroom over the finite windows: after the
    requested operations when allowed, as it stands when denied.
    """
    limits = get_plan(plan_id).limits
    used = {
        WindowKind.MONTHLY: int(monthly_used),
        WindowKind.DAILY: int(daily_used),
        WindowKind.HOURLY: int(hourly_used),
    }
    requested_ops = int(requested_ops)

    headroom: List[int] = []
    violated: Optional[WindowKind] = None
    for kind in _CHECK_ORDER:
        limit = limits.limit_for(kind)
        if limit is None:
            continue
        headroom.append(limit - used[kind])
        if violated is None and used[kind] + requested_ops > limit:
            violated = kind

    if violated is not None:
        limit = limits.limit_for(violated)
        return LimitCheck(
            allowed=False,
            limit_type=LimitType(violated.value),
            remaining=max(0, min(headroom)),
            message=f"{violated.value.capitalize()} operation limit reached ({used[violated]}/{limit})",
        )

    remaining = max(0, min(headroom) - requested_ops) if headroom else None
    return LimitCheck(allowed=True, remaining=remaining)


def check_file_size(plan_id: str, size_bytes: Optional[int]) -> LimitCheck:
    limit = get_plan(plan_id).limits.max_file_size_bytes
    if limit is None or size_bytes is None or size_bytes <= limit:
        return LimitCheck(allowed=True)
    return LimitCheck(
        allowed=False,
        limit_type=LimitType.FILE_SIZE,
        message=f"File size {size_bytes / MB:.1f} MB exceeds the {limit // MB} MB limit of this plan",
    )
