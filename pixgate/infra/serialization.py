# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/serialization.py
"""
JSON for values that go to Redis.

Conversion results often carry raw bytes (thumbnails, encoded images). Bytes
at any depth are written as {"__b64__": "<base64>"} and read back as bytes.
Anything else that is not a JSON type raises TypeError.
"""
import base64
import json
from typing import Any

BYTES_TAG = "__b64__"


def _default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _object_hook(obj: dict) -> Any:
    if len(obj) == 1 and BYTES_TAG in obj:
        return base64.b64decode(obj[BYTES_TAG])
    return obj


def dumps(value: Any, **kwargs) -> str:
    return json.dumps(value, default=_default, **kwargs)


def loads(raw) -> Any:
    return json.loads(raw, object_hook=_object_hook)
