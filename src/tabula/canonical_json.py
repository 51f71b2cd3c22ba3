"""Stable JSON encoding used for content hashes and cache keys."""

from __future__ import annotations

import json
import math
from datetime import date, datetime
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a value has no canonical JSON form."""


def _normalize(value: Any, path: str) -> Any:
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(f"Non-string key at {path}: {key!r}")
            out[key] = _normalize(item, f"{path}.{key}")
        return out
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Non-finite float at {path}: {value!r}")
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(value).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Serialize ``obj`` with sorted keys and no whitespace.

    Tuples encode as lists and dates as ISO strings, so two manifests or
    filter sets that differ only in key order produce the same text.
    """
    return json.dumps(
        _normalize(obj, "$"),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )
