# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/cache/entry.py
import json
import time
from dataclasses import dataclass
from typing import Any, Optional

from pixgate.infra import serialization


@dataclass
class CacheEntry:
    """
    A cached conversion result.

    `payload` is written once (a new parameter set gets a new key); only the
    access statistics change afterwards.
    """
    key: str
    payload: Any
    size_bytes: int
    created_at: float
    ttl_seconds: int
    format_class: str = "other"
    last_accessed: float = 0.0
    access_count: int = 0

    @classmethod
    def create(
        cls,
        key: str,
        payload: Any,
        *,
        ttl_seconds: int,
        format_class: str = "other",
        now: Optional[float] = None,
    ) -> "CacheEntry":
        now = time.time() if now is None else now
        return cls(
            key=key,
            payload=payload,
            size_bytes=payload_size(payload),
            created_at=now,
            ttl_seconds=int(ttl_seconds),
            format_class=format_class,
            last_accessed=now,
            access_count=0,
        )

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.ttl_seconds > 0 and now >= self.expires_at

    def touch(self, now: Optional[float] = None) -> None:
        self.last_accessed = time.time() if now is None else now
        self.access_count += 1

    def to_json(self) -> str:
        """Raises TypeError for payloads holding values other than JSON types and bytes."""
        return serialization.dumps({
            "key": self.key,
            "payload": self.payload,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
            "format_class": self.format_class,
        }, ensure_ascii=True)

    @classmethod
    def from_json(cls, raw, *, last_accessed: Optional[float] = None, access_count: int = 0) -> "CacheEntry":
        data = serialization.loads(raw)
        created_at = float(data["created_at"])
        return cls(
            key=data["key"],
            payload=data.get("payload"),
            size_bytes=int(data.get("size_bytes") or 0),
            created_at=created_at,
            ttl_seconds=int(data.get("ttl_seconds") or 0),
            format_class=data.get("format_class") or "other",
            last_accessed=created_at if last_accessed is None else last_accessed,
            access_count=int(access_count),
        )


def payload_size(payload: Any) -> int:
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    if isinstance(payload, str):
        return len(payload.encode("utf-8"))
    return len(json.dumps(payload, ensure_ascii=True, default=str))
