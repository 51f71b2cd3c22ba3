"""DB-backed stores (USE_DB=1), same interfaces as app.stores."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from psycopg2.extras import Json

from tabula import content_hash

from app.db import execute, fetch_all, fetch_one, get_conn
from module_registry import validate_manifest

logger = logging.getLogger("tabula.db")

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"
_SAFE_SORT_FIELDS = {"created_at", "updated_at", "id"}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _to_iso(value):
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _row_dict(row: dict | None, json_fields: Iterable[str] = (), time_fields: Iterable[str] = ("created_at", "updated_at", "expires_at")) -> dict | None:
    if row is None:
        return None
    item = dict(row)
    for key in json_fields:
        if key in item:
            item[key] = _ensure_json(item[key])
    for key in time_fields:
        if key in item:
            item[key] = _to_iso(item[key])
    return item


def ensure_schema() -> None:
    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    with get_conn() as conn:
        execute(conn, sql, query_name="schema.ensure")
    logger.info("db_schema_ready path=%s", SCHEMA_PATH.name)


class DbTokenStore:
    _FIELDS = (
        "id, token, name, permissions, is_admin, allowed_ips, allowed_domains, table_access, "
        "workspace_id, expires_at, created_by, created_at, updated_at"
    )

    def _one(self, where: str, params: list, name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, f"select {self._FIELDS} from api_tokens where {where}", params, query_name=name)
        return _row_dict(row, ("table_access",))

    def list(self, workspace_id: str | None = None) -> list[dict]:
        where = "where workspace_id=%s" if workspace_id is not None else ""
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {self._FIELDS} from api_tokens {where} order by created_at desc",
                [workspace_id] if workspace_id is not None else [],
                query_name="api_tokens.list",
            )
        return [_row_dict(r, ("table_access",)) for r in rows]

    def get(self, token_id: str) -> dict | None:
        return self._one("id=%s", [token_id], "api_tokens.get")

    def get_by_token(self, token: str) -> dict | None:
        return self._one("token=%s", [token], "api_tokens.get_by_token")

    def find_by_name(self, workspace_id: str, name: str) -> dict | None:
        return self._one("workspace_id=%s and name=%s", [workspace_id, name], "api_tokens.find_by_name")

    def create(self, values: dict) -> dict:
        token_id = values.get("id") or str(uuid.uuid4())
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into api_tokens (id, token, name, permissions, is_admin, allowed_ips, allowed_domains,
                                        table_access, workspace_id, expires_at, created_by, created_at, updated_at)
                values (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                """,
                [
                    token_id,
                    values.get("token"),
                    values.get("name"),
                    values.get("permissions") or "read",
                    bool(values.get("is_admin")),
                    values.get("allowed_ips"),
                    values.get("allowed_domains"),
                    Json(list(values.get("table_access") or [])),
                    values.get("workspace_id") or "default",
                    values.get("expires_at"),
                    values.get("created_by"),
                    _now(),
                    _now(),
                ],
                query_name="api_tokens.create",
            )
        return self.get(token_id)

    def update(self, token_id: str, changes: dict) -> dict:
        allowed = ("token", "name", "permissions", "is_admin", "allowed_ips", "allowed_domains", "table_access", "expires_at")
        sets = []
        params: list = []
        for key in allowed:
            if key in changes:
                sets.append(f"{key}=%s")
                params.append(Json(list(changes[key] or [])) if key == "table_access" else changes[key])
        sets.append("updated_at=%s")
        params.extend([_now(), token_id])
        with get_conn() as conn:
            count = execute(conn, f"update api_tokens set {', '.join(sets)} where id=%s", params, query_name="api_tokens.update")
        if not count:
            raise KeyError("token not found")
        return self.get(token_id)

    def delete(self, token_id: str) -> bool:
        with get_conn() as conn:
            return execute(conn, "delete from api_tokens where id=%s", [token_id], query_name="api_tokens.delete") > 0


class DbTableStore:
    _TABLE_FIELDS = "id, name, description, workspace_id, user_id, visibility, table_type, rental_period, created_at, updated_at"
    _COLUMN_FIELDS = "id, table_id, name, type, is_required, allow_duplicates, default_value, position, options, created_at, updated_at"

    def list_tables(self, workspace_id: str | None = None) -> list[dict]:
        where = "where workspace_id=%s" if workspace_id is not None else ""
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {self._TABLE_FIELDS} from dynamic_tables {where} order by created_at desc",
                [workspace_id] if workspace_id is not None else [],
                query_name="dynamic_tables.list",
            )
        return [_row_dict(r) for r in rows]

    def get_table(self, table_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, f"select {self._TABLE_FIELDS} from dynamic_tables where id=%s", [table_id], query_name="dynamic_tables.get")
        return _row_dict(row)

    def count_tables(self, workspace_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from dynamic_tables where workspace_id=%s", [workspace_id], query_name="dynamic_tables.count")
        return int(row["n"]) if row else 0

    def existing_ids(self, workspace_id: str, table_ids: Iterable[str]) -> set[str]:
        ids = list(table_ids)
        if not ids:
            return set()
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select id from dynamic_tables where workspace_id=%s and id = any(%s)",
                [workspace_id, ids],
                query_name="dynamic_tables.existing_ids",
            )
        return {r["id"] for r in rows}

    def create_table(self, values: dict) -> dict:
        table_id = values.get("id") or str(uuid.uuid4())
        now = _now()
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into dynamic_tables (id, name, description, workspace_id, user_id, visibility, table_type,
                                            rental_period, created_at, updated_at)
                values (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                """,
                [
                    table_id,
                    values.get("name"),
                    values.get("description"),
                    values.get("workspace_id") or "default",
                    values.get("user_id"),
                    values.get("visibility") or "private",
                    values.get("table_type") or "default",
                    values.get("rental_period"),
                    now,
                    now,
                ],
                query_name="dynamic_tables.create",
            )
        return self.get_table(table_id)

    def update_table(self, table_id: str, changes: dict) -> dict:
        allowed = ("name", "description", "visibility", "table_type", "rental_period")
        sets = [f"{k}=%s" for k in allowed if k in changes]
        params = [changes[k] for k in allowed if k in changes]
        sets.append("updated_at=%s")
        params.extend([_now(), table_id])
        with get_conn() as conn:
            count = execute(conn, f"update dynamic_tables set {', '.join(sets)} where id=%s", params, query_name="dynamic_tables.update")
        if not count:
            raise KeyError("table not found")
        return self.get_table(table_id)

    def delete_table(self, table_id: str) -> bool:
        with get_conn() as conn:
            return execute(conn, "delete from dynamic_tables where id=%s", [table_id], query_name="dynamic_tables.delete") > 0

    def list_columns(self, table_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {self._COLUMN_FIELDS} from table_columns where table_id=%s order by position, created_at",
                [table_id],
                query_name="table_columns.list",
            )
        return [_row_dict(r, ("options",)) for r in rows]

    def get_column(self, table_id: str, column_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select {self._COLUMN_FIELDS} from table_columns where table_id=%s and id=%s",
                [table_id, column_id],
                query_name="table_columns.get",
            )
        return _row_dict(row, ("options",))

    def create_column(self, table_id: str, values: dict) -> dict:
        column_id = values.get("id") or str(uuid.uuid4())
        now = _now()
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into table_columns (id, table_id, name, type, is_required, allow_duplicates, default_value,
                                           position, options, created_at, updated_at)
                values (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                """,
                [
                    column_id,
                    table_id,
                    values.get("name"),
                    values.get("type") or "text",
                    bool(values.get("is_required")),
                    values.get("allow_duplicates", True) is not False,
                    values.get("default_value"),
                    int(values.get("position") or 0),
                    Json(values.get("options")) if values.get("options") is not None else None,
                    now,
                    now,
                ],
                query_name="table_columns.create",
            )
        return self.get_column(table_id, column_id)

    def update_column(self, table_id: str, column_id: str, changes: dict) -> dict:
        allowed = ("name", "type", "is_required", "allow_duplicates", "default_value", "position", "options")
        sets = []
        params: list = []
        for key in allowed:
            if key in changes:
                sets.append(f"{key}=%s")
                params.append(Json(changes[key]) if key == "options" and changes[key] is not None else changes[key])
        sets.append("updated_at=%s")
        params.extend([_now(), table_id, column_id])
        with get_conn() as conn:
            count = execute(
                conn,
                f"update table_columns set {', '.join(sets)} where table_id=%s and id=%s",
                params,
                query_name="table_columns.update",
            )
        if not count:
            raise KeyError("column not found")
        return self.get_column(table_id, column_id)

    def delete_column(self, table_id: str, column_id: str) -> bool:
        with get_conn() as conn:
            return execute(conn, "delete from table_columns where table_id=%s and id=%s", [table_id, column_id], query_name="table_columns.delete") > 0


class DbRowStore:
    def _where(self, table_id: str, filters: dict | None, search: str | None) -> tuple[str, list]:
        where = "where table_id=%s"
        params: list = [table_id]
        for key, expected in (filters or {}).items():
            where += " and lower(data ->> %s) = lower(%s)"
            params.extend([key, str(expected)])
        if search:
            where += " and data::text ilike %s"
            params.append(f"%{search}%")
        return where, params

    def _public(self, row: dict) -> dict:
        item = _row_dict(row, ("data",))
        item.pop("seq", None)
        return item

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
        where, params = self._where(table_id, filters, search)
        direction = "desc" if str(sort_dir).lower() == "desc" else "asc"
        order_params: list = []
        if sort_by and sort_by not in _SAFE_SORT_FIELDS:
            order = (
                f"case when jsonb_typeof(data -> %s) = 'number' then (data ->> %s)::numeric end {direction} nulls last, "
                f"lower(data ->> %s) {direction} nulls last"
            )
            order_params = [sort_by, sort_by, sort_by]
        else:
            order = f"{sort_by or 'created_at'} {direction}, seq {direction}"
        page = "limit %s offset %s" if limit is not None else "offset %s"
        page_params = [limit, offset] if limit is not None else [offset]
        with get_conn() as conn:
            count = fetch_one(conn, f"select count(*) as n from table_rows {where}", params, query_name="table_rows.count_filtered")
            rows = fetch_all(
                conn,
                f"select id, table_id, data, created_at, updated_at from table_rows {where} order by {order} {page}",
                params + order_params + page_params,
                query_name="table_rows.list",
            )
        return [self._public(r) for r in rows], int(count["n"]) if count else 0

    def count_rows(self, table_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from table_rows where table_id=%s", [table_id], query_name="table_rows.count")
        return int(row["n"]) if row else 0

    def get_row(self, table_id: str, row_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select id, table_id, data, created_at, updated_at from table_rows where table_id=%s and id=%s",
                [table_id, row_id],
                query_name="table_rows.get",
            )
        return self._public(row) if row else None

    def create_row(self, table_id: str, data: dict, row_id: str | None = None) -> dict:
        row_id = row_id or str(uuid.uuid4())
        now = _now()
        with get_conn() as conn:
            execute(
                conn,
                "insert into table_rows (id, table_id, data, created_at, updated_at) values (%s,%s,%s,%s,%s)",
                [row_id, table_id, Json(data), now, now],
                query_name="table_rows.create",
            )
        return {"id": row_id, "table_id": table_id, "data": copy.deepcopy(data), "created_at": now, "updated_at": now}

    def update_row(self, table_id: str, row_id: str, data: dict) -> dict:
        with get_conn() as conn:
            count = execute(
                conn,
                "update table_rows set data=%s, updated_at=%s where table_id=%s and id=%s",
                [Json(data), _now(), table_id, row_id],
                query_name="table_rows.update",
            )
        if not count:
            raise KeyError("row not found")
        return self.get_row(table_id, row_id)

    def delete_rows(self, table_id: str, row_ids: Iterable[str]) -> int:
        ids = list(row_ids)
        if not ids:
            return 0
        with get_conn() as conn:
            return execute(conn, "delete from table_rows where table_id=%s and id = any(%s)", [table_id, ids], query_name="table_rows.delete")

    def delete_all_rows(self, table_id: str) -> int:
        with get_conn() as conn:
            return execute(conn, "delete from table_rows where table_id=%s", [table_id], query_name="table_rows.delete_all")

    def find_rows_with_value(self, table_id: str, column_name: str, value: Any, exclude_id: str | None = None) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select id, table_id, data, created_at, updated_at from table_rows
                where table_id=%s and lower(trim(data ->> %s)) = lower(trim(%s)) and id <> %s
                """,
                [table_id, column_name, str(value), exclude_id or ""],
                query_name="table_rows.find_value",
            )
        return [self._public(r) for r in rows]


class _DbSequencedStore:
    table = ""
    kind = ""

    def next_sequence(self, workspace_id: str, year: int) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into record_sequences (kind, workspace_id, year, value) values (%s,%s,%s,1)
                on conflict (kind, workspace_id, year) do update set value = record_sequences.value + 1
                returning value
                """,
                [self.kind, workspace_id, year],
                query_name=f"{self.table}.next_sequence",
            )
        return int(row["value"])

    def _status(self, record: dict) -> str | None:
        return record.get("status") or record.get("sale_status")

    def create(self, values: dict) -> dict:
        record = copy.deepcopy(values)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", _now())
        record["updated_at"] = record["created_at"]
        with get_conn() as conn:
            execute(
                conn,
                f"""
                insert into {self.table} (id, workspace_id, table_id, item_id, status, record, created_at, updated_at)
                values (%s,%s,%s,%s,%s,%s,%s,%s)
                """,
                [
                    record["id"],
                    record.get("workspace_id"),
                    record.get("table_id"),
                    record.get("item_id"),
                    self._status(record),
                    Json(record),
                    record["created_at"],
                    record["updated_at"],
                ],
                query_name=f"{self.table}.create",
            )
        return record

    def get(self, record_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, f"select record from {self.table} where id=%s", [record_id], query_name=f"{self.table}.get")
        return _ensure_json(row["record"]) if row else None

    def update(self, record_id: str, changes: dict) -> dict:
        record = self.get(record_id)
        if record is None:
            raise KeyError("record not found")
        record.update(copy.deepcopy(changes))
        record["updated_at"] = _now()
        with get_conn() as conn:
            execute(
                conn,
                f"update {self.table} set record=%s, status=%s, updated_at=%s where id=%s",
                [Json(record), self._status(record), record["updated_at"], record_id],
                query_name=f"{self.table}.update",
            )
        return record

    def list(self, workspace_id: str, filters: dict | None = None) -> list[dict]:
        filters = filters or {}
        where = "where workspace_id=%s"
        params: list = [workspace_id]
        if filters.get("table_id"):
            where += " and table_id=%s"
            params.append(filters["table_id"])
        if filters.get("status"):
            where += " and status=%s"
            params.append(filters["status"])
        if filters.get("date_from"):
            where += " and created_at >= %s"
            params.append(filters["date_from"])
        if filters.get("date_to"):
            where += " and created_at::date <= %s::date"
            params.append(filters["date_to"][:10])
        with get_conn() as conn:
            rows = fetch_all(conn, f"select record from {self.table} {where} order by created_at desc", params, query_name=f"{self.table}.list")
        return [_ensure_json(r["record"]) for r in rows]


class DbSaleStore(_DbSequencedStore):
    table = "sales"
    kind = "sale"


class DbRentalStore(_DbSequencedStore):
    table = "rentals"
    kind = "rental"

    def find_active_by_item(self, table_id: str, item_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select record from rentals where table_id=%s and item_id=%s and status='active' order by created_at desc limit 1",
                [table_id, item_id],
                query_name="rentals.find_active",
            )
        return _ensure_json(row["record"]) if row else None


class DbInventoryStore:
    def create(self, values: dict) -> dict:
        record = copy.deepcopy(values)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", _now())
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into inventory_transactions (id, workspace_id, table_id, item_id, transaction_type, record, created_at)
                values (%s,%s,%s,%s,%s,%s,%s)
                """,
                [
                    record["id"],
                    record.get("workspace_id"),
                    record.get("table_id"),
                    record.get("item_id"),
                    record.get("transaction_type"),
                    Json(record, dumps=_json_dumps),
                    record["created_at"],
                ],
                query_name="inventory_transactions.create",
            )
        return record

    def list(self, workspace_id: str, filters: dict | None = None, limit: int = 50, offset: int = 0) -> tuple[list[dict], int]:
        filters = filters or {}
        where = "where workspace_id=%s"
        params: list = [workspace_id]
        for key in ("table_id", "item_id", "transaction_type"):
            if filters.get(key):
                where += f" and {key}=%s"
                params.append(filters[key])
        with get_conn() as conn:
            count = fetch_one(conn, f"select count(*) as n from inventory_transactions {where}", params, query_name="inventory_transactions.count")
            rows = fetch_all(
                conn,
                f"select record from inventory_transactions {where} order by created_at desc limit %s offset %s",
                params + [limit, offset],
                query_name="inventory_transactions.list",
            )
        return [_ensure_json(r["record"]) for r in rows], int(count["n"]) if count else 0

    def clear(self, workspace_id: str) -> int:
        with get_conn() as conn:
            return execute(conn, "delete from inventory_transactions where workspace_id=%s", [workspace_id], query_name="inventory_transactions.clear")


class DbManifestStore:
    def get_head(self, module_id: str) -> str | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select record ->> 'current_hash' as manifest_hash from modules_installed where module_id=%s",
                [module_id],
                query_name="modules_installed.head",
            )
            return row["manifest_hash"] if row else None

    def get_snapshot(self, module_id: str, manifest_hash_value: str) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select manifest from manifest_snapshots where module_id=%s and manifest_hash=%s",
                [module_id, manifest_hash_value],
                query_name="manifest_snapshots.get",
            )
            if not row:
                raise KeyError("Snapshot not found")
            return copy.deepcopy(_ensure_json(row["manifest"]))

    def get_head_manifest(self, module_id: str) -> dict | None:
        head = self.get_head(module_id)
        if head is None:
            return None
        return self.get_snapshot(module_id, head)

    def list_history(self, module_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select audit from module_audit where module_id=%s order by created_at desc",
                [module_id],
                query_name="module_audit.list",
            )
            return [_ensure_json(r["audit"]) for r in rows]

    def list_snapshots(self, module_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select manifest_hash, created_at, actor, reason from manifest_snapshots
                where module_id=%s order by created_at desc
                """,
                [module_id],
                query_name="manifest_snapshots.list",
            )
        return [
            {
                "manifest_hash": r["manifest_hash"],
                "created_at": _to_iso(r["created_at"]),
                "created_by": _ensure_json(r["actor"]),
                "reason": r["reason"],
            }
            for r in rows
        ]

    def put_manifest(self, module_id: str, manifest: dict, actor: dict | None = None, reason: str = "install") -> dict:
        """Insert the snapshot if new; the registry row owns the head pointer."""
        manifest_copy = copy.deepcopy(manifest)
        try:
            new_hash = content_hash(manifest_copy)
        except (TypeError, ValueError) as exc:
            return {"ok": False, "errors": [_issue("MANIFEST_INVALID", str(exc), "manifest")], "warnings": [], "from_hash": None, "to_hash": None}
        from_hash = self.get_head(module_id)
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into manifest_snapshots (module_id, manifest_hash, manifest, created_at, actor, reason)
                values (%s,%s,%s,%s,%s,%s)
                on conflict (module_id, manifest_hash) do nothing
                """,
                [module_id, new_hash, Json(manifest_copy), _now(), Json(actor) if actor else None, reason],
                query_name="manifest_snapshots.insert",
            )
        warnings = []
        if from_hash == new_hash:
            warnings.append(_issue("MANIFEST_UNCHANGED", "manifest identical to current snapshot", "manifest"))
        return {"ok": True, "errors": [], "warnings": warnings, "from_hash": from_hash, "to_hash": new_hash}

    def delete_module(self, module_id: str) -> None:
        with get_conn() as conn:
            execute(conn, "delete from manifest_snapshots where module_id=%s", [module_id], query_name="manifest_snapshots.delete")


class DbModuleRegistry:
    def __init__(self, manifest_store: DbManifestStore) -> None:
        self._store = manifest_store

    def _record(self, module_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select record from modules_installed where module_id=%s", [module_id], query_name="modules_installed.get")
        return _ensure_json(row["record"]) if row else None

    def _save(self, record: dict) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into modules_installed (module_id, record, updated_at) values (%s,%s,%s)
                on conflict (module_id) do update set record=excluded.record, updated_at=excluded.updated_at
                """,
                [record["module_id"], Json(record), _now()],
                query_name="modules_installed.upsert",
            )

    def _add_audit(self, module_id: str, action: str, from_hash: str | None, to_hash: str | None, actor: dict | None, reason: str | None) -> str:
        audit_id = str(uuid.uuid4())
        audit = {
            "audit_id": audit_id,
            "module_id": module_id,
            "action": action,
            "from_hash": from_hash,
            "to_hash": to_hash,
            "actor": actor,
            "reason": reason,
            "at": _now(),
        }
        with get_conn() as conn:
            execute(
                conn,
                "insert into module_audit (audit_id, module_id, audit, created_at) values (%s,%s,%s,%s)",
                [audit_id, module_id, Json(audit), audit["at"]],
                query_name="module_audit.insert",
            )
        return audit_id

    def get(self, module_id: str) -> dict | None:
        return self._record(module_id)

    def list(self) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(conn, "select record from modules_installed order by module_id", query_name="modules_installed.list")
        return [_ensure_json(r["record"]) for r in rows]

    def history(self, module_id: str) -> list[dict]:
        return self._store.list_history(module_id)

    def get_manifest(self, module_id: str) -> dict | None:
        return self._store.get_head_manifest(module_id)

    def install(self, manifest: dict, actor: dict | None = None) -> dict:
        checked = validate_manifest(manifest)
        if not checked["ok"]:
            return {"ok": False, "errors": checked["errors"], "warnings": checked["warnings"], "module": None, "audit_id": None}
        module_id = manifest["id"]
        existing = self._record(module_id)
        action = "upgrade" if existing else "install"
        stored = self._store.put_manifest(module_id, manifest, actor, reason=action)
        if not stored["ok"]:
            return {"ok": False, "errors": stored["errors"], "warnings": checked["warnings"], "module": None, "audit_id": None}
        now = _now()
        record = existing or {"module_id": module_id, "enabled": True, "status": "active", "installed_at": now, "last_error": None}
        record.update(
            {
                "name": manifest.get("name"),
                "version": manifest.get("version"),
                "description": manifest.get("description"),
                "author": manifest.get("author"),
                "current_hash": stored["to_hash"],
                "updated_at": now,
            }
        )
        self._save(record)
        audit_id = self._add_audit(module_id, action, stored["from_hash"], stored["to_hash"], actor, action)
        return {"ok": True, "errors": [], "warnings": checked["warnings"] + stored["warnings"], "module": record, "audit_id": audit_id}

    def set_enabled(self, module_id: str, enabled: bool, actor: dict | None = None, reason: str = "toggle") -> dict:
        record = self._record(module_id)
        if record is None:
            return {"ok": False, "errors": [_issue("MODULE_NOT_FOUND", "module not found", "module_id")], "warnings": [], "module": None, "audit_id": None}
        warnings = []
        if bool(record.get("enabled")) == bool(enabled):
            warnings.append(_issue("MODULE_STATE_UNCHANGED", "module already in requested state", "enabled"))
        record["enabled"] = bool(enabled)
        record["status"] = "active" if enabled else "disabled"
        record["updated_at"] = _now()
        self._save(record)
        action = "enable" if enabled else "disable"
        audit_id = self._add_audit(module_id, action, record.get("current_hash"), record.get("current_hash"), actor, reason)
        return {"ok": True, "errors": [], "warnings": warnings, "module": record, "audit_id": audit_id}

    def uninstall(self, module_id: str, actor: dict | None = None) -> dict:
        record = self._record(module_id)
        if record is None:
            return {"ok": False, "errors": [_issue("MODULE_NOT_FOUND", "module not found", "module_id")], "warnings": []}
        with get_conn() as conn:
            execute(conn, "delete from modules_installed where module_id=%s", [module_id], query_name="modules_installed.delete")
        self._store.delete_module(module_id)
        self._add_audit(module_id, "uninstall", record.get("current_hash"), None, actor, "uninstall")
        return {"ok": True, "errors": [], "warnings": []}

    def get_settings(self, module_id: str) -> dict:
        with get_conn() as conn:
            row = fetch_one(conn, "select settings from modules_installed where module_id=%s", [module_id], query_name="modules_installed.settings")
        return _ensure_json(row["settings"]) or {} if row else {}

    def set_settings(self, module_id: str, values: dict, actor: dict | None = None) -> dict:
        with get_conn() as conn:
            count = execute(
                conn,
                "update modules_installed set settings=%s, updated_at=%s where module_id=%s",
                [Json(values), _now(), module_id],
                query_name="modules_installed.set_settings",
            )
        if not count:
            raise KeyError("module not found")
        self._add_audit(module_id, "settings", None, None, actor, "settings")
        return copy.deepcopy(values)

    def column_types(self) -> dict[str, dict]:
        types: dict[str, dict] = {}
        for record in self.list():
            if not record.get("enabled"):
                continue
            manifest = self._store.get_snapshot(record["module_id"], record["current_hash"])
            for definition in manifest.get("columnTypes") or []:
                types[f"{record['module_id']}:{definition['id']}"] = definition
        return types

    def table_generators(self) -> list[dict]:
        generators = []
        for record in self.list():
            if not record.get("enabled"):
                continue
            manifest = self._store.get_snapshot(record["module_id"], record["current_hash"])
            for generator in manifest.get("tableGenerators") or []:
                generators.append(dict(generator, module_id=record["module_id"]))
        return generators
