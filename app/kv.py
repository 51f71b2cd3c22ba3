"""KV namespace backends.

The cache layer talks to a small KV interface: ``get``/``put``/``delete``
plus prefix ``list``. An in-memory namespace serves tests and single-process
runs; the Redis namespace is used when ``REDIS_URL`` is set.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger("tabula.kv")


class KVNamespace(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def put(self, key: str, value: str, expiration_ttl: int | None = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def list(self, prefix: str = "") -> list[str]:
        ...


class KVError(RuntimeError):
    pass


@dataclass
class MemoryKV:
    """Dict-backed namespace with optional per-key expiry."""

    _data: dict = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def _alive(self, key: str, now: float) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._data[key]
            return False
        return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            if not self._alive(key, time.time()):
                return None
            return self._data[key][0]

    def put(self, key: str, value: str, expiration_ttl: int | None = None) -> None:
        expires_at = time.time() + expiration_ttl if expiration_ttl else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list(self, prefix: str = "") -> list[str]:
        now = time.time()
        with self._lock:
            keys = [k for k in list(self._data.keys()) if k.startswith(prefix)]
            return sorted(k for k in keys if self._alive(k, now))

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


@dataclass
class RedisKV:
    """Redis-backed namespace; keys are stored under ``key_prefix``."""

    url: str
    key_prefix: str = "tabula:"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _reconnect(self) -> None:
        self.client = redis.Redis.from_url(self.url)

    def get(self, key: str) -> Optional[str]:
        try:
            raw = self.client.get(self._key(key))
        except redis_exceptions.ConnectionError as exc:
            self._reconnect()
            raise KVError(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    def put(self, key: str, value: str, expiration_ttl: int | None = None) -> None:
        try:
            self.client.set(self._key(key), value, ex=expiration_ttl or None)
        except redis_exceptions.ConnectionError as exc:
            self._reconnect()
            raise KVError(f"redis put failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis_exceptions.ConnectionError as exc:
            self._reconnect()
            raise KVError(f"redis delete failed: {exc}") from exc

    def list(self, prefix: str = "") -> list[str]:
        try:
            keys = []
            for raw in self.client.scan_iter(match=f"{self._key(prefix)}*"):
                name = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
                keys.append(name[len(self.key_prefix):])
            return sorted(keys)
        except redis_exceptions.ConnectionError as exc:
            self._reconnect()
            raise KVError(f"redis list failed: {exc}") from exc


def kv_from_env(redis_url: str | None, key_prefix: str = "tabula:") -> KVNamespace:
    if redis_url:
        logger.info("kv_backend=redis prefix=%s", key_prefix)
        return RedisKV(url=redis_url, key_prefix=key_prefix)
    logger.info("kv_backend=memory")
    return MemoryKV()
