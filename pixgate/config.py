# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# pixgate/config.py
from __future__ import annotations
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int | None = None

    # "memory" keeps every store in-process (single instance / tests), "redis" shares state
    STORAGE_BACKEND: str = "redis"

    TENANT: str = Field(default="home", alias="TENANT_ID")
    PROJECT: str = Field(default="default-project", alias="DEFAULT_PROJECT_NAME")

    # Quota
    STRICT_QUOTA_ENFORCEMENT: bool = False
    OPERATION_CLAIM_TTL_SECONDS: int = 24 * 3600
    AUDIT_RETENTION_DAYS: int = 90

    # Result cache
    CACHE_LOCAL_MAX_ENTRIES: int = 1000
    CACHE_BASE_TTL_SECONDS: int = 3600
    CACHE_INFLIGHT_TTL_SECONDS: int = 60
    CACHE_JOIN_TIMEOUT_SECONDS: float = 30.0
    CACHE_JOIN_POLL_SECONDS: float = 0.5
    CACHE_JOIN_RETRIES: int = 2
    CACHE_STALE_AFTER_SECONDS: int = 24 * 3600
    CACHE_SWEEP_INTERVAL_SECONDS: float = 3600.0

    # Job dispatch
    JOB_RAW_CONCURRENCY: int = 3
    JOB_STANDARD_CONCURRENCY: int = 10
    JOB_BULK_CONCURRENCY: int = 1
    JOB_RETENTION_SECONDS: int = 24 * 3600
    JOB_SWEEP_INTERVAL_SECONDS: float = 3600.0

    # Blob store
    STORAGE_PATH: str = "./data/blobs"
    BLOB_RETRY_ATTEMPTS: int = 3
    BLOB_RETRY_BASE_DELAY_SECONDS: float = 1.0

    # Low-credit warnings
    WARNING_EMAILS_ENABLED: bool = True
    WARNING_CACHE_MAX_ENTRIES: int = 10000
    ADMIN_EMAIL: str | None = None

@lru_cache()
def get_settings() -> Settings:
    return Settings()
