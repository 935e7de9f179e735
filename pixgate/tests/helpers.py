# SPDX-License-Identifier: MIT

from typing import Any, Dict, List

from pixgate.infra.cache.local import LocalLRUCache
from pixgate.infra.cache.result_cache import ResultCache
from pixgate.infra.cache.shared import InMemorySharedTier
from pixgate.infra.errors import StorageUnavailable
from pixgate.infra.quota.audit import InMemoryAuditLog
from pixgate.infra.quota.ledger import QuotaLedger
from pixgate.infra.quota.notifier import QuotaWarningNotifier, WarningDedupCache
from pixgate.infra.quota.store import InMemoryQuotaStore
from pixgate.service import UsageService


class RecordingSender:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, **kwargs) -> bool:
        self.calls.append(kwargs)
        return True


class UnreachableQuotaStore(InMemoryQuotaStore):
    """Counter store whose backend cannot be reached."""

    async def get_or_create(self, key, *, now):
        raise StorageUnavailable("connection refused")

    async def increment(self, key, ops, *, now):
        raise StorageUnavailable("connection refused")


class FlakyQuotaStore(InMemoryQuotaStore):
    """Fails the next `failures` increments, then behaves."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def increment(self, key, ops, *, now):
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailable("connection reset")
        return await super().increment(key, ops, now=now)


def make_service(*, quota_store=None, strict: bool = False, **kwargs) -> UsageService:
    sender = RecordingSender()
    return UsageService(
        ledger=QuotaLedger(quota_store or InMemoryQuotaStore()),
        cache=ResultCache(
            InMemorySharedTier(),
            local=LocalLRUCache(100),
            poll_interval_sec=0.01,
            join_timeout_sec=1.0,
        ),
        audit=InMemoryAuditLog(),
        notifier=QuotaWarningNotifier(WarningDedupCache(), sender=sender),
        strict=strict,
        **kwargs,
    )
