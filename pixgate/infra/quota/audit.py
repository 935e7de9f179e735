# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/audit.py

import json
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from pixgate.infra.errors import StorageUnavailable
from pixgate.infra.namespaces import REDIS, ns_key

OPERATION_TYPES = ("compression", "conversion", "special_conversion")
INTERFACES = ("web", "api")


@dataclass
class AuditRecord:
    """One recorded operation."""
    identity_kind: str
    identity_id: str
    scope: str
    isolation: str
    plan_id: str
    operation_type: str = "compression"
    file_format: Optional[str] = None
    file_size_mb: Optional[float] = None
    interface: str = "web"
    outcome: str = "recorded"
    processing_time_ms: Optional[int] = None
    operation_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d")


class OperationAuditLog(ABC):
    """Append-only operation log."""

    @abstractmethod
    async def append(self, record: AuditRecord) -> None: ...

    @abstractmethod
    async def records_for_day(self, day: str) -> List[AuditRecord]:
        """All records of one UTC day (YYYYMMDD), oldest first."""


class InMemoryAuditLog(OperationAuditLog):
    def __init__(self, max_records: int = 10000):
        self._records: Deque[AuditRecord] = deque(maxlen=max_records)

    async def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    async def records_for_day(self, day: str) -> List[AuditRecord]:
        return [r for r in self._records if _day(r.created_at) == day]


class RedisAuditLog(OperationAuditLog):
    """
    Redis-backed operation log.

    Key format:
      pixgate:audit:ops:{tenant}:{project}:{YYYYMMDD}

    Value:
      Redis LIST of JSON-serialized AuditRecord.to_dict(); the key expires
      `retention_days` after its last append.
    """

    def __init__(self, redis: Redis, *, key_prefix: Optional[str] = None, retention_days: int = 90):
        self.redis = redis
        self.key_prefix = key_prefix or ns_key(REDIS.AUDIT.OPERATIONS_PREFIX)
        self.ttl_seconds = int(retention_days) * 86400

    def _key(self, day: str) -> str:
        return f"{self.key_prefix}:{day}"

    async def append(self, record: AuditRecord) -> None:
        key = self._key(_day(record.created_at))
        payload = json.dumps(record.to_dict(), ensure_ascii=False)
        pipe = self.redis.pipeline()
        pipe.rpush(key, payload)
        if self.ttl_seconds:
            pipe.expire(key, self.ttl_seconds)
        try:
            await pipe.execute()
        except RedisError as e:
            raise StorageUnavailable(f"Audit log unavailable: {e}") from e

    async def records_for_day(self, day: str) -> List[AuditRecord]:
        try:
            raw = await self.redis.lrange(self._key(day), 0, -1)
        except RedisError as e:
            raise StorageUnavailable(f"Audit log unavailable: {e}") from e
        return [AuditRecord.from_dict(json.loads(item)) for item in raw or []]
