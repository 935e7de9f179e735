# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/jobs/conversion.py
import hashlib
import inspect
import logging
from typing import Any, Dict, Optional, Protocol

from pixgate.infra.blob.store import IBlobStore
from pixgate.infra.cache.fingerprint import normalize_format
from pixgate.infra.errors import JobFailed
from pixgate.infra.jobs.queue import JobContext

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_DOWNLOADED = 30
PROGRESS_ENCODED = 80
PROGRESS_UPLOADED = 95
# 100 is written by the queue when the job completes


class IImageEncoder(Protocol):
    def encode(self, data: bytes, options: Dict[str, Any]) -> Any:
        """Return encoded bytes (or an awaitable of them)."""
        ...


class ConversionJobHandler:
    """
    download input -> encode -> upload output.

    Payload:
        input_url: blob URL of the source image
        output_format, quality, width, height: encoder options
        output_key: optional target blob key
    """

    def __init__(self, encoder: IImageEncoder, blobs: IBlobStore, *, output_prefix: str = "converted"):
        self.encoder = encoder
        self.blobs = blobs
        self.output_prefix = output_prefix.strip("/")

    async def __call__(self, ctx: JobContext) -> Dict[str, Any]:
        payload = ctx.payload
        input_url = payload.get("input_url")
        if not input_url:
            raise JobFailed("input_url is required")
        output_format = normalize_format(payload.get("output_format")) or "jpg"

        await ctx.report_progress(PROGRESS_STARTED)
        data = await self.blobs.download(input_url)
        await ctx.report_progress(PROGRESS_DOWNLOADED)

        options = {
            "output_format": output_format,
            "quality": payload.get("quality"),
            "width": payload.get("width"),
            "height": payload.get("height"),
        }
        try:
            encoded = self.encoder.encode(data, options)
            if inspect.isawaitable(encoded):
                encoded = await encoded
        except JobFailed:
            raise
        except Exception as e:
            raise JobFailed(f"Encoding to {output_format} failed: {e}") from e
        await ctx.report_progress(PROGRESS_ENCODED)

        key = payload.get("output_key") or self._output_key(ctx.job_id, output_format)
        url = await self.blobs.upload(encoded, key)
        await ctx.report_progress(PROGRESS_UPLOADED)

        logger.info("Converted job %s: %d -> %d bytes (%s)", ctx.job_id, len(data), len(encoded), output_format)
        return {
            "url": url,
            "output_format": output_format,
            "input_size": len(data),
            "output_size": len(encoded),
            "sha256": hashlib.sha256(encoded).hexdigest(),
        }

    def _output_key(self, job_id: str, output_format: Optional[str]) -> str:
        return f"{self.output_prefix}/{job_id}.{output_format or 'bin'}"
