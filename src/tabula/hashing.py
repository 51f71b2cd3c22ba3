"""Content hashes for module snapshots and short cache-key hashes."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def content_hash(obj: Any) -> str:
    data = canonical_dumps(obj).encode("utf-8")
    return "sha256:" + hashlib.sha256(data).hexdigest()


def djb2_hex(text: str) -> str:
    """djb2-xor hash of ``text`` as unsigned 32-bit hex.

    Used to keep KV keys short when they encode long id lists.
    """
    value = 5381
    for ch in text:
        value = ((value << 5) + value) ^ ord(ch)
        value &= 0xFFFFFFFF
    return format(value, "x")
