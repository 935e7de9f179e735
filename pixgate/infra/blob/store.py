# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/blob/store.py
"""
Blob storage for job inputs and outputs.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Tuple, Type, TypeVar
from urllib.parse import unquote, urlparse

from pixgate.infra.errors import JobFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")

# not worth retrying: the same call will fail the same way
PERMANENT_ERRORS: Tuple[Type[BaseException], ...] = (
    FileNotFoundError, IsADirectoryError, NotADirectoryError, PermissionError, ValueError,
)


class IBlobStore(ABC):
    """Interface for blob stores."""

    @abstractmethod
    async def upload(self, data: bytes, key: str) -> str:
        """Store `data` under `key`; returns its URL."""
        pass

    @abstractmethod
    async def download(self, url: str) -> bytes:
        """Fetch the bytes behind a URL returned by upload()."""
        pass


class LocalFileSystemBlobStore(IBlobStore):
    """Local filesystem blob store; URLs are file:// URLs under base_path."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve_path(self, path: str) -> Path:
        """Resolve a path relative to the base path."""
        resolved = (self.base_path / path.lstrip("/")).resolve()
        if not resolved.is_relative_to(self.base_path):
            raise ValueError(f"Path {path} is outside base directory")
        return resolved

    def _write(self, key: str, data: bytes) -> str:
        resolved = self._resolve_path(key)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
        return resolved.as_uri()

    def _read(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme not in ("", "file"):
            raise ValueError(f"Unsupported blob URL scheme: {parsed.scheme}")
        path = Path(unquote(parsed.path)).resolve()
        if not path.is_relative_to(self.base_path):
            raise ValueError(f"Path {path} is outside base directory")
        return path.read_bytes()

    async def upload(self, data: bytes, key: str) -> str:
        return await asyncio.to_thread(self._write, key, data)

    async def download(self, url: str) -> bytes:
        return await asyncio.to_thread(self._read, url)


async def with_retries(
    op: Callable[[], Awaitable[T]],
    *,
    what: str,
    attempts: int = 3,
    base_delay_sec: float = 1.0,
    backoff_factor: float = 2.0,
) -> T:
    """
    Run `op`, retrying transient failures with exponential backoff
    (base_delay, base_delay * factor, ...). Raises JobFailed when exhausted.
    """
    attempt = 0
    while True:
        try:
            return await op()
        except PERMANENT_ERRORS as e:
            raise JobFailed(f"{what} failed: {e}") from e
        except (OSError, ConnectionError, TimeoutError) as e:
            attempt += 1
            if attempt >= attempts:
                raise JobFailed(f"{what} failed after {attempts} attempts: {e}") from e
            delay = base_delay_sec * (backoff_factor ** (attempt - 1))
            logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s", what, attempt, attempts, delay, e)
            await asyncio.sleep(delay)


class RetryingBlobStore(IBlobStore):
    """Applies bounded retry-with-backoff around another blob store."""

    def __init__(self, inner: IBlobStore, *, attempts: int = 3, base_delay_sec: float = 1.0):
        self.inner = inner
        self.attempts = int(attempts)
        self.base_delay_sec = float(base_delay_sec)

    async def upload(self, data: bytes, key: str) -> str:
        return await with_retries(
            lambda: self.inner.upload(data, key),
            what=f"upload {key}", attempts=self.attempts, base_delay_sec=self.base_delay_sec,
        )

    async def download(self, url: str) -> bytes:
        return await with_retries(
            lambda: self.inner.download(url),
            what="download", attempts=self.attempts, base_delay_sec=self.base_delay_sec,
        )
