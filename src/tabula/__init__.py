"""Tabula core utilities shared by the API and the module registry."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .hashing import content_hash, djb2_hex

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "content_hash",
    "djb2_hex",
]
