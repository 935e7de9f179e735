# SPDX-License-Identifier: MIT

import pytest

from pixgate.infra.errors import UnknownPlanError
from pixgate.infra.quota.policy import (
    MB,
    PLANS,
    LimitType,
    check_file_size,
    check_operation_limits,
    get_plan,
)


def test_free_plan_within_limits():
    res = check_operation_limits("free", monthly_used=10, daily_used=5, hourly_used=2)
    assert res.allowed is True
    # hourly headroom (25 - 2) is the tightest, one op consumed
    assert res.remaining == 22


def test_shortest_window_is_reported_first():
    # hourly 5/5 and daily 25/25 are both exhausted for anonymous
    res = check_operation_limits("anonymous", monthly_used=100, daily_used=25, hourly_used=5)
    assert res.allowed is False
    assert res.limit_type is LimitType.HOURLY
    assert res.message == "Hourly operation limit reached (5/5)"


def test_batch_that_would_cross_monthly_limit_is_denied():
    res = check_operation_limits("cr2-free", monthly_used=99, daily_used=0, hourly_used=0, requested_ops=2)
    assert res.allowed is False
    assert res.limit_type is LimitType.MONTHLY
    assert res.remaining == 1


def test_denied_iff_some_window_overflows():
    limits = get_plan("free").limits
    for monthly in (0, 500, 999, 1000):
        for daily in (0, 50, 99, 100):
            for hourly in (0, 24, 25):
                for ops in (1, 3):
                    res = check_operation_limits("free", monthly, daily, hourly, ops)
                    overflow = (
                        monthly + ops > limits.monthly_operations
                        or daily + ops > limits.max_operations_per_day
                        or hourly + ops > limits.max_operations_per_hour
                    )
                    assert res.allowed is (not overflow)


def test_unlimited_windows_are_skipped():
    res = check_operation_limits("enterprise", monthly_used=10, daily_used=10_000, hourly_used=10_000)
    assert res.allowed is True
    assert res.remaining == 50000 - 10 - 1


def test_unknown_plan_raises():
    with pytest.raises(UnknownPlanError):
        check_operation_limits("platinum", 0, 0, 0)


def test_file_size_limit():
    assert check_file_size("free", 9 * MB).allowed is True
    assert check_file_size("free", None).allowed is True
    res = check_file_size("free", 11 * MB)
    assert res.allowed is False
    assert res.limit_type is LimitType.FILE_SIZE
    assert check_file_size("enterprise", 150 * MB).allowed is True


def test_plan_table():
    assert set(PLANS) == {"anonymous", "free", "cr2-free", "test_premium", "pro", "enterprise"}
    assert get_plan("pro").limits.max_operations_per_day is None
    assert get_plan("pro").limits.max_operations_per_hour == 1000
