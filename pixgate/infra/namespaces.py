# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/namespaces.py

def tp_prefix(tenant: str | None = None, project: str | None = None) -> str:
    from pixgate.config import get_settings
    s = get_settings()
    t = tenant or s.TENANT
    p = project or s.PROJECT
    return f"{t}:{p}"

def ns_key(base: str, *, tenant: str | None = None, project: str | None = None) -> str:
    return f"{base}:{tp_prefix(tenant, project)}"

class REDIS:
    class QUOTA:
        """
        Usage counters, one hash per (identity kind, identity id, axis, isolation).

        Format: pixgate:quota:counter:{tenant}:{project}:{kind}:{id}:{axis}:{isolation}
        Fields: m, d, h (used), ps, dr, hr (window markers, epoch microseconds), lo (last op)
        """
        COUNTER_PREFIX = "pixgate:quota:counter"
        OPERATION_CLAIM_PREFIX = "pixgate:quota:op"

    class AUDIT:
        # list per UTC day: {prefix}:{tenant}:{project}:{YYYYMMDD}
        OPERATIONS_PREFIX = "pixgate:audit:ops"

    class CACHE:
        RESULT_PREFIX = "pixgate:cache:result"
        META_PREFIX = "pixgate:cache:meta"
        ACCESS_INDEX = "pixgate:cache:index"
        INFLIGHT_PREFIX = "pixgate:cache:inflight"
        METRICS_PREFIX = "pixgate:cache:metrics"

    class JOBS:
        RECORD_PREFIX = "pixgate:jobs:job"
