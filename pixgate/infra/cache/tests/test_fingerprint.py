# SPDX-License-Identifier: MIT

from pixgate.infra.cache.fingerprint import (
    FormatClass,
    format_class,
    fingerprint,
    normalize_format,
    params_format_class,
    ttl_for,
)


def test_fingerprint_ignores_key_order_and_spelling():
    a = {"format": "PNG", "output_format": "JPEG", "quality": 80, "width": 640, "file_hash": "ABC"}
    b = {"fileHash": "abc", "width": "640", "quality": "80", "outputFormat": "jpg", "format": ".png"}
    assert fingerprint(a) == fingerprint(b)


def test_fingerprint_ignores_unrelated_fields():
    base = {"format": "png", "output_format": "webp", "quality": 75}
    noisy = {**base, "request_id": "r-123", "timestamp": 1700000000}
    assert fingerprint(base) == fingerprint(noisy)


def test_fingerprint_changes_with_any_identifying_field():
    base = {"format": "png", "output_format": "webp", "quality": 75, "width": 100, "height": 50, "file_hash": "f1"}
    seen = {fingerprint(base)}
    for field, value in (("format", "gif"), ("output_format", "avif"), ("quality", 76),
                         ("width", 101), ("height", 51), ("file_hash", "f2")):
        seen.add(fingerprint({**base, field: value}))
    assert len(seen) == 7


def test_fingerprint_is_hex_sha256():
    key = fingerprint({"format": "png"})
    assert len(key) == 64
    int(key, 16)


def test_normalize_format():
    assert normalize_format("image/jpeg") == "jpg"
    assert normalize_format("image/x-canon-cr2") == "canon-cr2"
    assert normalize_format(".CR2") == "cr2"
    assert normalize_format("") is None


def test_format_classes():
    assert format_class("nef") is FormatClass.RAW
    assert format_class("image/avif") is FormatClass.AVIF
    assert format_class("webp") is FormatClass.WEBP
    assert format_class("jpeg") is FormatClass.JPEG
    assert format_class("png") is FormatClass.OTHER


def test_ttl_multipliers():
    assert ttl_for({"format": "cr2", "output_format": "jpg"}, 3600) == 4 * 3600
    assert ttl_for({"format": "png", "output_format": "avif"}, 3600) == 2 * 3600
    assert ttl_for({"format": "png", "output_format": "webp"}, 3600) == 5400
    assert ttl_for({"format": "png", "output_format": "jpg"}, 3600) == 3600
    assert ttl_for({"format": "png", "output_format": "png"}, 3600) == 3600


def test_costliest_format_class_wins():
    assert params_format_class({"format": "webp", "output_format": "avif"}) is FormatClass.AVIF
    assert params_format_class({"format": "dng", "output_format": "webp"}) is FormatClass.RAW
