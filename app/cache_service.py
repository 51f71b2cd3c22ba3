"""Namespaced cache over a KV backend.

Entries live forever unless invalidated, except cached query results which
carry a short logical TTL on top of the backend expiry.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable

from app.kv import KVNamespace, MemoryKV
from tabula import djb2_hex

logger = logging.getLogger("tabula.cache")

QUERY_TTL_S = 60
QUERY_KV_TTL_S = 120

TOKEN_PREFIX = "auth:token:"
TABLE_METADATA_PREFIX = "table:metadata:"
TABLE_COLUMNS_PREFIX = "table:columns:"
ROWCOUNT_PREFIX = "rowcount:"
ITEM_PREFIX = "item:"
ACCESS_PREFIX = "access:"
PUBLIC_TABLES_KEY = "public:tables:all"
QUERY_PREFIX = "query:"


def query_key(table_ids: Iterable[str], conditions: dict | None, limit: int, offset: int) -> str:
    table_hash = djb2_hex(",".join(sorted(str(t) for t in table_ids)))
    if conditions:
        parts = sorted(f"{k}={str(v).lower()}" for k, v in conditions.items())
        cond_hash = djb2_hex("&".join(parts))
    else:
        cond_hash = "0"
    return f"{QUERY_PREFIX}{table_hash}:{cond_hash}:{limit}:{offset}"


class CacheService:
    def __init__(self, kv: KVNamespace | None = None) -> None:
        self.kv = kv if kv is not None else MemoryKV()

    # raw helpers

    def _get(self, key: str) -> Any:
        try:
            raw = self.kv.get(key)
        except Exception as exc:
            logger.warning("cache_get_failed key=%s error=%s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache_decode_failed key=%s", key)
            return None

    def _put(self, key: str, value: Any, expiration_ttl: int | None = None) -> None:
        try:
            self.kv.put(key, json.dumps(value, default=str), expiration_ttl=expiration_ttl)
        except Exception as exc:
            logger.warning("cache_put_failed key=%s error=%s", key, exc)

    def _delete(self, key: str) -> None:
        try:
            self.kv.delete(key)
        except Exception as exc:
            logger.warning("cache_delete_failed key=%s error=%s", key, exc)

    def _list(self, prefix: str) -> list[str]:
        try:
            return self.kv.list(prefix)
        except Exception as exc:
            logger.warning("cache_list_failed prefix=%s error=%s", prefix, exc)
            return []

    # tokens

    def get_token(self, token: str) -> dict | None:
        return self._get(f"{TOKEN_PREFIX}{token}")

    def set_token(self, token: str, record: dict) -> None:
        self._put(f"{TOKEN_PREFIX}{token}", record)

    def invalidate_token(self, token: str) -> None:
        self._delete(f"{TOKEN_PREFIX}{token}")

    # tables

    def get_table_metadata(self, table_id: str) -> dict | None:
        return self._get(f"{TABLE_METADATA_PREFIX}{table_id}")

    def set_table_metadata(self, table_id: str, table: dict) -> None:
        self._put(f"{TABLE_METADATA_PREFIX}{table_id}", table)

    def get_table_columns(self, table_id: str) -> list | None:
        return self._get(f"{TABLE_COLUMNS_PREFIX}{table_id}")

    def set_table_columns(self, table_id: str, columns: list) -> None:
        self._put(f"{TABLE_COLUMNS_PREFIX}{table_id}", columns)

    def get_row_count(self, table_id: str) -> int | None:
        value = self._get(f"{ROWCOUNT_PREFIX}{table_id}")
        return value if isinstance(value, int) else None

    def set_row_count(self, table_id: str, count: int) -> None:
        self._put(f"{ROWCOUNT_PREFIX}{table_id}", int(count))

    def invalidate_row_count(self, table_id: str) -> None:
        self._delete(f"{ROWCOUNT_PREFIX}{table_id}")

    def get_row_counts_batch(self, table_ids: Iterable[str]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table_id in table_ids:
            count = self.get_row_count(table_id)
            if count is not None:
                counts[table_id] = count
        return counts

    def set_row_counts_batch(self, counts: dict[str, int]) -> None:
        for table_id, count in counts.items():
            self.set_row_count(table_id, count)

    # items

    def get_item(self, table_id: str, item_id: str) -> dict | None:
        return self._get(f"{ITEM_PREFIX}{table_id}:{item_id}")

    def set_item(self, table_id: str, item_id: str, row: dict) -> None:
        self._put(f"{ITEM_PREFIX}{table_id}:{item_id}", row)

    def invalidate_item(self, table_id: str, item_id: str) -> None:
        self._delete(f"{ITEM_PREFIX}{table_id}:{item_id}")

    def invalidate_table_items(self, table_id: str) -> None:
        for key in self._list(f"{ITEM_PREFIX}{table_id}:"):
            self._delete(key)

    # access decisions

    def get_table_access(self, user_id: str, table_id: str) -> bool | None:
        try:
            raw = self.kv.get(f"{ACCESS_PREFIX}{user_id}:{table_id}")
        except Exception as exc:
            logger.warning("cache_get_failed key=access error=%s", exc)
            return None
        if raw is None:
            return None
        return raw == "true"

    def set_table_access(self, user_id: str, table_id: str, allowed: bool) -> None:
        try:
            self.kv.put(f"{ACCESS_PREFIX}{user_id}:{table_id}", "true" if allowed else "false")
        except Exception as exc:
            logger.warning("cache_put_failed key=access error=%s", exc)

    def invalidate_table_access(self, table_id: str) -> None:
        suffix = f":{table_id}"
        for key in self._list(ACCESS_PREFIX):
            if key.endswith(suffix):
                self._delete(key)

    def invalidate_user_access(self, user_id: str) -> None:
        for key in self._list(f"{ACCESS_PREFIX}{user_id}:"):
            self._delete(key)

    # public tables list

    def get_public_tables(self) -> list | None:
        return self._get(PUBLIC_TABLES_KEY)

    def set_public_tables(self, tables: list) -> None:
        self._put(PUBLIC_TABLES_KEY, tables)

    def invalidate_public_tables(self) -> None:
        self._delete(PUBLIC_TABLES_KEY)

    # query results

    def get_query_result(self, table_ids: Iterable[str], conditions: dict | None, limit: int, offset: int) -> Any:
        key = query_key(table_ids, conditions, limit, offset)
        entry = self._get(key)
        if not isinstance(entry, dict):
            return None
        if time.time() - float(entry.get("cached_at") or 0) > QUERY_TTL_S:
            self._delete(key)
            return None
        return entry.get("data")

    def set_query_result(self, table_ids: Iterable[str], conditions: dict | None, limit: int, offset: int, data: Any) -> None:
        ids = sorted(str(t) for t in table_ids)
        key = query_key(ids, conditions, limit, offset)
        self._put(key, {"data": data, "cached_at": time.time(), "table_ids": ids}, expiration_ttl=QUERY_KV_TTL_S)

    def invalidate_query_results(self, table_ids: Iterable[str] | None = None) -> int:
        """Drop cached queries touching any of ``table_ids`` (all queries when None)."""
        targets = set(str(t) for t in table_ids) if table_ids is not None else None
        removed = 0
        for key in self._list(QUERY_PREFIX):
            if targets is not None:
                entry = self._get(key)
                cached_ids = entry.get("table_ids") if isinstance(entry, dict) else None
                if isinstance(cached_ids, list) and not targets.intersection(cached_ids):
                    continue
            self._delete(key)
            removed += 1
        return removed

    # bulk

    def invalidate_table_data(self, table_id: str, item_id: str | None = None) -> None:
        self.invalidate_row_count(table_id)
        if item_id:
            self.invalidate_item(table_id, item_id)
        else:
            self.invalidate_table_items(table_id)
        self.invalidate_query_results([table_id])

    def invalidate_all_table_caches(self, table_id: str) -> None:
        self._delete(f"{TABLE_METADATA_PREFIX}{table_id}")
        self._delete(f"{TABLE_COLUMNS_PREFIX}{table_id}")
        self.invalidate_row_count(table_id)
        self.invalidate_table_items(table_id)
        self.invalidate_table_access(table_id)
        self.invalidate_public_tables()
        self.invalidate_query_results([table_id])
        logger.info("cache_table_invalidated table_id=%s", table_id)
