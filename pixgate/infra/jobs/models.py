# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/jobs/models.py
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pixgate.infra.cache.fingerprint import RAW_FORMATS, normalize_format


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class JobClass(str, Enum):
    RAW = "raw"
    STANDARD = "standard"
    BULK = "bulk"


# lower value is served first
TIER_PRIORITY: Dict[str, int] = {
    "enterprise": 1,
    "pro": 5,
    "premium": 5,
    "test_premium": 5,
    "free": 10,
    "anonymous": 10,
}
DEFAULT_PRIORITY = 10

DEFAULT_CONCURRENCY: Dict[JobClass, int] = {
    JobClass.RAW: 3,
    JobClass.STANDARD: 10,
    JobClass.BULK: 1,
}

BULK_FILE_LIMITS: Dict[str, int] = {
    "enterprise": 1000,
    "premium": 100,
    "pro": 100,
    "developer": 20,
}
DEFAULT_BULK_FILE_LIMIT = 10


def priority_for(tier: Optional[str]) -> int:
    return TIER_PRIORITY.get((tier or "").lower(), DEFAULT_PRIORITY)


def bulk_file_limit(tier: Optional[str]) -> int:
    return BULK_FILE_LIMITS.get((tier or "").lower(), DEFAULT_BULK_FILE_LIMIT)


def job_class_for(payload: Dict[str, Any]) -> JobClass:
    if payload.get("files") and len(payload["files"]) > 1:
        return JobClass.BULK
    fmt = normalize_format(payload.get("format") or payload.get("input_format"))
    if fmt in RAW_FORMATS:
        return JobClass.RAW
    return JobClass.STANDARD


@dataclass
class Job:
    id: str
    job_class: JobClass
    priority: int
    payload: Dict[str, Any]
    tier: Optional[str] = None
    state: JobState = JobState.QUEUED
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["job_class"] = self.job_class.value
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        data = dict(data)
        data["job_class"] = JobClass(data["job_class"])
        data["state"] = JobState(data["state"])
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def status(self) -> "JobStatus":
        return JobStatus(
            task_id=self.id,
            status=self.state.value,
            progress=self.progress,
            result=self.result,
            error=self.error,
        )


@dataclass
class JobStatus:
    """What callers polling a job see"""
    task_id: str
    status: str  # 'queued', 'active', 'completed', 'failed'
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
