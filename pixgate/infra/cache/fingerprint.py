# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/cache/fingerprint.py
import hashlib
import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# Only these parameters identify a result; request ids, timestamps etc. are ignored.
FINGERPRINT_FIELDS = ("format", "output_format", "quality", "width", "height", "file_hash")

_ALIASES = {
    "outputFormat": "output_format",
    "fileHash": "file_hash",
    "contentHash": "file_hash",
    "content_hash": "file_hash",
}

_FORMAT_ALIASES = {"jpeg": "jpg", "tif": "tiff"}

RAW_FORMATS = frozenset({"arw", "cr2", "cr3", "dng", "nef", "orf", "rw2", "raf", "raw"})


class FormatClass(str, Enum):
    RAW = "raw"
    AVIF = "avif"
    WEBP = "webp"
    JPEG = "jpeg"
    OTHER = "other"


TTL_MULTIPLIERS: Dict[FormatClass, float] = {
    FormatClass.RAW: 4.0,
    FormatClass.AVIF: 2.0,
    FormatClass.WEBP: 1.5,
    FormatClass.JPEG: 1.0,
    FormatClass.OTHER: 1.0,
}


def normalize_format(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    fmt = str(value).strip().lower().lstrip(".")
    if "/" in fmt:  # mime type
        fmt = fmt.rsplit("/", 1)[1]
        if fmt.startswith("x-"):
            fmt = fmt[2:]
    return _FORMAT_ALIASES.get(fmt, fmt)


def format_class(fmt: Any) -> FormatClass:
    fmt = normalize_format(fmt)
    if fmt in RAW_FORMATS:
        return FormatClass.RAW
    if fmt == "avif":
        return FormatClass.AVIF
    if fmt == "webp":
        return FormatClass.WEBP
    if fmt == "jpg":
        return FormatClass.JPEG
    return FormatClass.OTHER


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def canonical_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    raw = {_ALIASES.get(k, k): v for k, v in params.items()}
    return {
        "format": normalize_format(raw.get("format")),
        "output_format": normalize_format(raw.get("output_format")),
        "quality": _int_or_none(raw.get("quality")),
        "width": _int_or_none(raw.get("width")),
        "height": _int_or_none(raw.get("height")),
        "file_hash": (str(raw["file_hash"]).lower() if raw.get("file_hash") else None),
    }


def fingerprint(params: Mapping[str, Any]) -> str:
    """
    Deterministic cache key for a conversion.

    Key order, camelCase vs snake_case and format spelling ("JPEG", "jpg")
    do not change the key; any other field is ignored.
    """
    payload = json.dumps(canonical_params(params), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def params_format_class(params: Mapping[str, Any]) -> FormatClass:
    """Costliest class among the input and output formats."""
    canon = canonical_params(params)
    classes = [format_class(canon["format"]), format_class(canon["output_format"])]
    return max(classes, key=lambda c: TTL_MULTIPLIERS[c])


def ttl_for(params: Mapping[str, Any], base_ttl_seconds: int = 3600) -> int:
    return int(base_ttl_seconds * TTL_MULTIPLIERS[params_format_class(params)])
