# SPDX-License-Identifier: MIT

from datetime import datetime, timezone

import pytest

from pixgate.infra.quota.audit import AuditRecord, InMemoryAuditLog, RedisAuditLog

DAY1 = datetime(2024, 5, 1, 23, 59, tzinfo=timezone.utc).timestamp()
DAY2 = datetime(2024, 5, 2, 0, 1, tzinfo=timezone.utc).timestamp()


def _record(op_id: str, ts: float) -> AuditRecord:
    return AuditRecord(
        identity_kind="user",
        identity_id="u1",
        scope="free",
        isolation="free",
        plan_id="free",
        operation_type="conversion",
        file_format="png",
        file_size_mb=1.5,
        operation_id=op_id,
        created_at=ts,
    )


@pytest.mark.asyncio
async def test_records_are_bucketed_by_utc_day():
    log = InMemoryAuditLog()
    await log.append(_record("a", DAY1))
    await log.append(_record("b", DAY2))
    await log.append(_record("c", DAY2))
    assert [r.operation_id for r in await log.records_for_day("20240501")] == ["a"]
    assert [r.operation_id for r in await log.records_for_day("20240502")] == ["b", "c"]


def test_record_dict_round_trip_ignores_unknown_fields():
    data = _record("a", DAY1).to_dict()
    data["legacy_field"] = 1
    assert AuditRecord.from_dict(data) == _record("a", DAY1)


@pytest.mark.asyncio
async def test_redis_audit_log_keeps_order_and_expires():
    fakeredis = pytest.importorskip("fakeredis")
    redis = fakeredis.FakeAsyncRedis()
    log = RedisAuditLog(redis, key_prefix="test:audit", retention_days=2)
    await log.append(_record("b", DAY2))
    await log.append(_record("c", DAY2))
    records = await log.records_for_day("20240502")
    assert [r.operation_id for r in records] == ["b", "c"]
    assert records[0].file_size_mb == 1.5
    ttl = await redis.ttl("test:audit:20240502")
    assert 0 < ttl <= 2 * 86400
