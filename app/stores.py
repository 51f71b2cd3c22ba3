"""In-memory stores used when USE_DB is off (tests, local runs)."""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _sort_key(value: Any):
    if value is None or value == "":
        return (2, 0, "")
    if isinstance(value, bool):
        return (0, int(value), "")
    if isinstance(value, (int, float)):
        return (0, value, "")
    try:
        return (0, float(value), "")
    except (TypeError, ValueError):
        return (1, 0, str(value).lower())


def row_matches(data: dict, filters: dict | None, search: str | None) -> bool:
    for key, expected in (filters or {}).items():
        actual = data.get(key)
        if actual is None:
            return False
        if str(actual).lower() != str(expected).lower():
            return False
    if search:
        needle = search.lower()
        if not any(needle in str(v).lower() for v in data.values() if v is not None):
            return False
    return True


class MemoryTokenStore:
    def __init__(self) -> None:
        self._tokens: Dict[str, dict] = {}

    def list(self, workspace_id: str | None = None) -> list[dict]:
        items = [
            copy.deepcopy(t)
            for t in self._tokens.values()
            if workspace_id is None or (t.get("workspace_id") or "default") == workspace_id
        ]
        return sorted(items, key=lambda t: t.get("created_at") or "", reverse=True)

    def get(self, token_id: str) -> dict | None:
        record = self._tokens.get(token_id)
        return copy.deepcopy(record) if record else None

    def get_by_token(self, token: str) -> dict | None:
        for record in self._tokens.values():
            if record.get("token") == token:
                return copy.deepcopy(record)
        return None

    def find_by_name(self, workspace_id: str, name: str) -> dict | None:
        for record in self._tokens.values():
            if (record.get("workspace_id") or "default") == workspace_id and record.get("name") == name:
                return copy.deepcopy(record)
        return None

    def create(self, values: dict) -> dict:
        now = _now()
        record = {
            "id": values.get("id") or str(uuid.uuid4()),
            "token": values.get("token"),
            "name": values.get("name"),
            "permissions": values.get("permissions") or "read",
            "is_admin": bool(values.get("is_admin")),
            "allowed_ips": values.get("allowed_ips"),
            "allowed_domains": values.get("allowed_domains"),
            "table_access": list(values.get("table_access") or []),
            "workspace_id": values.get("workspace_id") or "default",
            "expires_at": values.get("expires_at"),
            "created_by": values.get("created_by"),
            "created_at": now,
            "updated_at": now,
        }
        self._tokens[record["id"]] = record
        return copy.deepcopy(record)

    def update(self, token_id: str, changes: dict) -> dict:
        record = self._tokens.get(token_id)
        if record is None:
            raise KeyError("token not found")
        record.update(copy.deepcopy(changes))
        record["updated_at"] = _now()
        return copy.deepcopy(record)

    def delete(self, token_id: str) -> bool:
        return self._tokens.pop(token_id, None) is not None


class MemoryTableStore:
    def __init__(self) -> None:
        self._tables: Dict[str, dict] = {}
        self._columns: Dict[str, Dict[str, dict]] = {}

    def list_tables(self, workspace_id: str | None = None) -> list[dict]:
        items = [
            copy.deepcopy(t)
            for t in self._tables.values()
            if workspace_id is None or t.get("workspace_id") == workspace_id
        ]
        return sorted(items, key=lambda t: t.get("created_at") or "", reverse=True)

    def get_table(self, table_id: str) -> dict | None:
        record = self._tables.get(table_id)
        return copy.deepcopy(record) if record else None

    def count_tables(self, workspace_id: str) -> int:
        return sum(1 for t in self._tables.values() if t.get("workspace_id") == workspace_id)

    def existing_ids(self, workspace_id: str, table_ids: Iterable[str]) -> set[str]:
        wanted = set(table_ids)
        return {tid for tid, t in self._tables.items() if tid in wanted and t.get("workspace_id") == workspace_id}

    def create_table(self, values: dict) -> dict:
        now = _now()
        record = {
            "id": values.get("id") or str(uuid.uuid4()),
            "name": values.get("name"),
            "description": values.get("description"),
            "workspace_id": values.get("workspace_id") or "default",
            "user_id": values.get("user_id"),
            "visibility": values.get("visibility") or "private",
            "table_type": values.get("table_type") or "default",
            "rental_period": values.get("rental_period"),
            "created_at": now,
            "updated_at": now,
        }
        self._tables[record["id"]] = record
        self._columns[record["id"]] = {}
        return copy.deepcopy(record)

    def update_table(self, table_id: str, changes: dict) -> dict:
        record = self._tables.get(table_id)
        if record is None:
            raise KeyError("table not found")
        record.update(copy.deepcopy(changes))
        record["updated_at"] = _now()
        return copy.deepcopy(record)

    def delete_table(self, table_id: str) -> bool:
        self._columns.pop(table_id, None)
        return self._tables.pop(table_id, None) is not None

    def list_columns(self, table_id: str) -> list[dict]:
        columns = [copy.deepcopy(c) for c in self._columns.get(table_id, {}).values()]
        return sorted(columns, key=lambda c: (c.get("position") or 0, c.get("created_at") or ""))

    def get_column(self, table_id: str, column_id: str) -> dict | None:
        record = self._columns.get(table_id, {}).get(column_id)
        return copy.deepcopy(record) if record else None

    def create_column(self, table_id: str, values: dict) -> dict:
        now = _now()
        record = {
            "id": values.get("id") or str(uuid.uuid4()),
            "table_id": table_id,
            "name": values.get("name"),
            "type": values.get("type") or "text",
            "is_required": bool(values.get("is_required")),
            "allow_duplicates": values.get("allow_duplicates", True) is not False,
            "default_value": values.get("default_value"),
            "position": int(values.get("position") or 0),
            "options": copy.deepcopy(values.get("options")),
            "created_at": now,
            "updated_at": now,
        }
        self._columns.setdefault(table_id, {})[record["id"]] = record
        return copy.deepcopy(record)

    def update_column(self, table_id: str, column_id: str, changes: dict) -> dict:
        record = self._columns.get(table_id, {}).get(column_id)
        if record is None:
            raise KeyError("column not found")
        record.update(copy.deepcopy(changes))
        record["updated_at"] = _now()
        return copy.deepcopy(record)

    def delete_column(self, table_id: str, column_id: str) -> bool:
        return self._columns.get(table_id, {}).pop(column_id, None) is not None


class MemoryRowStore:
    def __init__(self) -> None:
        self._rows: Dict[str, Dict[str, dict]] = {}

    def _filtered(self, table_id: str, filters: dict | None, search: str | None) -> list[dict]:
        rows = self._rows.get(table_id, {}).values()
        return [r for r in rows if row_matches(r.get("data") or {}, filters, search)]

    def list_rows(
        self,
        table_id: str,
        filters: dict | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        sort_dir: str = "asc",
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        rows = self._filtered(table_id, filters, search)
        reverse = str(sort_dir).lower() == "desc"
        if sort_by and sort_by not in ("created_at", "updated_at", "id"):
            rows.sort(key=lambda r: _sort_key((r.get("data") or {}).get(sort_by)), reverse=reverse)
        else:
            field = sort_by or "created_at"
            rows.sort(key=lambda r: (r.get(field) or "", r.get("_seq", 0)), reverse=reverse)
        total = len(rows)
        page = rows[offset:] if limit is None else rows[offset : offset + limit]
        return [self._public(r) for r in page], total

    def _public(self, row: dict) -> dict:
        data = copy.deepcopy(row)
        data.pop("_seq", None)
        return data

    def count_rows(self, table_id: str) -> int:
        return len(self._rows.get(table_id, {}))

    def get_row(self, table_id: str, row_id: str) -> dict | None:
        record = self._rows.get(table_id, {}).get(row_id)
        return self._public(record) if record else None

    def create_row(self, table_id: str, data: dict, row_id: str | None = None) -> dict:
        now = _now()
        bucket = self._rows.setdefault(table_id, {})
        record = {
            "id": row_id or str(uuid.uuid4()),
            "table_id": table_id,
            "data": copy.deepcopy(data),
            "created_at": now,
            "updated_at": now,
            "_seq": len(bucket),
        }
        bucket[record["id"]] = record
        return self._public(record)

    def update_row(self, table_id: str, row_id: str, data: dict) -> dict:
        record = self._rows.get(table_id, {}).get(row_id)
        if record is None:
            raise KeyError("row not found")
        record["data"] = copy.deepcopy(data)
        record["updated_at"] = _now()
        return self._public(record)

    def delete_rows(self, table_id: str, row_ids: Iterable[str]) -> int:
        bucket = self._rows.get(table_id, {})
        deleted = 0
        for row_id in row_ids:
            if bucket.pop(row_id, None) is not None:
                deleted += 1
        return deleted

    def delete_all_rows(self, table_id: str) -> int:
        return len(self._rows.pop(table_id, {}) or {})

    def find_rows_with_value(self, table_id: str, column_name: str, value: Any, exclude_id: str | None = None) -> list[dict]:
        matches = []
        for row in self._rows.get(table_id, {}).values():
            if row["id"] == exclude_id:
                continue
            existing = (row.get("data") or {}).get(column_name)
            if existing is not None and str(existing).strip().lower() == str(value).strip().lower():
                matches.append(self._public(row))
        return matches


class _SequencedStore:
    """Shared shape of sales and rentals: records plus a per-year counter."""

    def __init__(self) -> None:
        self._records: Dict[str, dict] = {}
        self._sequences: Dict[tuple, int] = {}
        self._lock = threading.Lock()

    def next_sequence(self, workspace_id: str, year: int) -> int:
        with self._lock:
            key = (workspace_id, year)
            self._sequences[key] = self._sequences.get(key, 0) + 1
            return self._sequences[key]

    def create(self, values: dict) -> dict:
        now = _now()
        record = copy.deepcopy(values)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", now)
        record["updated_at"] = now
        self._records[record["id"]] = record
        return copy.deepcopy(record)

    def get(self, record_id: str) -> dict | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    def update(self, record_id: str, changes: dict) -> dict:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError("record not found")
        record.update(copy.deepcopy(changes))
        record["updated_at"] = _now()
        return copy.deepcopy(record)

    def list(self, workspace_id: str, filters: dict | None = None) -> list[dict]:
        filters = filters or {}
        items = []
        for record in self._records.values():
            if record.get("workspace_id") != workspace_id:
                continue
            if filters.get("table_id") and record.get("table_id") != filters["table_id"]:
                continue
            if filters.get("status") and record.get("status") != filters["status"]:
                continue
            created = record.get("created_at") or ""
            if filters.get("date_from") and created < filters["date_from"]:
                continue
            if filters.get("date_to") and created[:10] > filters["date_to"][:10]:
                continue
            items.append(copy.deepcopy(record))
        return sorted(items, key=lambda r: r.get("created_at") or "", reverse=True)


class MemorySaleStore(_SequencedStore):
    pass


class MemoryRentalStore(_SequencedStore):
    def find_active_by_item(self, table_id: str, item_id: str) -> dict | None:
        for record in self._records.values():
            if record.get("table_id") == table_id and record.get("item_id") == item_id and record.get("status") == "active":
                return copy.deepcopy(record)
        return None


class MemoryInventoryStore:
    def __init__(self) -> None:
        self._transactions: List[dict] = []

    def create(self, values: dict) -> dict:
        record = copy.deepcopy(values)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", _now())
        self._transactions.append(record)
        return copy.deepcopy(record)

    def list(self, workspace_id: str, filters: dict | None = None, limit: int = 50, offset: int = 0) -> tuple[list[dict], int]:
        filters = filters or {}
        items = []
        for record in reversed(self._transactions):
            if record.get("workspace_id") != workspace_id:
                continue
            if any(filters.get(k) and record.get(k) != filters[k] for k in ("table_id", "item_id", "transaction_type")):
                continue
            items.append(record)
        return [copy.deepcopy(r) for r in items[offset : offset + limit]], len(items)

    def clear(self, workspace_id: str) -> int:
        before = len(self._transactions)
        self._transactions = [t for t in self._transactions if t.get("workspace_id") != workspace_id]
        return before - len(self._transactions)
