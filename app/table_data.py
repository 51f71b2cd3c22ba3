"""Row CRUD, import/export and validation for dynamic tables."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from app import column_types
from app.errors import NotFoundError, ServiceError, ValidationFailed, issue

logger = logging.getLogger("tabula.data")

ROW_MASS_ACTIONS = ("delete", "export", "set_field_value")
MAX_PAGE_SIZE = 500
SALE_DEFAULTS = {"price": 0, "qty": 1}


def _page(limit: Any, offset: Any, default: int = 50) -> tuple[int, int]:
    try:
        limit = int(limit) if limit is not None else default
    except (TypeError, ValueError):
        limit = default
    try:
        offset = int(offset) if offset is not None else 0
    except (TypeError, ValueError):
        offset = 0
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


class TableDataService:
    def __init__(self, tables, row_store, cache=None, inventory=None) -> None:
        self.tables = tables
        self.row_store = row_store
        self.cache = cache
        self.inventory = inventory

    def _invalidate(self, table_id: str, item_id: str | None = None) -> None:
        if self.cache is not None:
            self.cache.invalidate_table_data(table_id, item_id)

    def _track(self, user: dict, table: dict, item_id: str, kind: str, previous: dict | None, new: dict | None) -> None:
        if self.inventory is not None:
            self.inventory.track_row_change(user["workspace_id"], table, item_id, kind, previous, new, created_by=user.get("id"))

    def prepare_values(
        self,
        table: dict,
        columns: list[dict],
        data: dict,
        existing: dict | None = None,
        row_id: str | None = None,
        strict: bool = True,
    ) -> tuple[dict, list[dict], list[dict]]:
        """Merge, default, coerce and check ``data`` for a row.

        Returns ``(values, errors, warnings)``. With ``strict`` off, type and
        required problems are reported as warnings and the values are kept.
        """
        module_types = self.tables.module_types()
        by_name = {c["name"]: c for c in columns}
        values = dict(existing or {})
        errors: list[dict] = []
        warnings: list[dict] = []
        for key, value in (data or {}).items():
            if key not in by_name:
                warnings.append(issue("UNKNOWN_FIELD", f"Field {key} is not a column of this table", key))
                continue
            values[key] = value
        if existing is None:
            for column in columns:
                if column["name"] in values and not column_types.is_empty(values[column["name"]]):
                    continue
                if column.get("default_value") is not None:
                    values[column["name"]] = column["default_value"]
                elif table.get("table_type") == "sale" and column["name"] in SALE_DEFAULTS:
                    values[column["name"]] = SALE_DEFAULTS[column["name"]]
        problems = errors if strict else warnings
        for column in columns:
            name = column["name"]
            value = values.get(name)
            if column_types.is_empty(value):
                if column.get("is_required"):
                    problems.append(issue("REQUIRED_FIELD", f"{name} is required", name))
                continue
            result = column_types.validate_value(value, name, column["type"], module_types, column.get("options"))
            if not result["is_valid"]:
                detail = {"suggestion": result["suggestion"]} if result.get("suggestion") else None
                problems.append(issue("INVALID_VALUE", f"{name}: {result['error']}", name, detail))
                continue
            values[name] = column_types.coerce_value(value, column["type"], module_types)
            if column.get("allow_duplicates") is False and self.row_store.find_rows_with_value(table["id"], name, values[name], exclude_id=row_id):
                errors.append(issue("DUPLICATE_VALUE", f"{name} must be unique; {values[name]} already exists", name))
        return values, errors, warnings

    # reads

    def _with_formatted(self, table_id: str, rows: list[dict]) -> list[dict]:
        """Attach display strings for module columns that declare a format."""
        module_types = self.tables.module_types()
        columns = [
            c
            for c in self.tables.get_columns(table_id)
            if (module_types.get(c.get("type")) or {}).get("format")
        ]
        if not columns:
            return rows
        result = []
        for row in rows:
            data = row.get("data") or {}
            formatted = {
                c["name"]: column_types.format_module_value(data[c["name"]], c["type"], module_types, c.get("options"))
                for c in columns
                if not column_types.is_empty(data.get(c["name"]))
            }
            result.append(dict(row, formatted=formatted))
        return result

    def list_rows(self, user: dict, table_id: str, params: dict | None = None) -> dict:
        params = params or {}
        self.tables.get_table(user, table_id, "read")
        limit, offset = _page(params.get("limit"), params.get("offset"))
        sort_dir = "desc" if str(params.get("sort_dir") or "").lower() == "desc" else "asc"
        rows, total = self.row_store.list_rows(
            table_id,
            filters=params.get("filters") or None,
            search=(params.get("search") or "").strip() or None,
            sort_by=params.get("sort_by") or None,
            sort_dir=sort_dir,
            limit=limit,
            offset=offset,
        )
        return {"items": self._with_formatted(table_id, rows), "total": total, "limit": limit, "offset": offset, "has_more": offset + len(rows) < total}

    def get_row(self, user: dict, table_id: str, row_id: str) -> dict:
        self.tables.get_table(user, table_id, "read")
        row = self.cache.get_item(table_id, row_id) if self.cache is not None else None
        if row is None:
            row = self.row_store.get_row(table_id, row_id)
            if row is None:
                raise NotFoundError("Row not found", "row_id")
            if self.cache is not None:
                self.cache.set_item(table_id, row_id, row)
        return self._with_formatted(table_id, [row])[0]

    # writes

    def create_row(self, user: dict, table_id: str, data: dict) -> dict:
        table = self.tables.get_table(user, table_id, "write")
        columns = self.tables.get_columns(table_id)
        values, errors, warnings = self.prepare_values(table, columns, data)
        if errors:
            raise ValidationFailed(errors, "Row validation failed")
        row = self.row_store.create_row(table_id, values)
        self._invalidate(table_id)
        self._track(user, table, row["id"], "add", None, values)
        return {"row": row, "warnings": warnings}

    def update_row(self, user: dict, table_id: str, row_id: str, data: dict) -> dict:
        table = self.tables.get_table(user, table_id, "write")
        current = self.row_store.get_row(table_id, row_id)
        if current is None:
            raise NotFoundError("Row not found", "row_id")
        columns = self.tables.get_columns(table_id)
        previous = current.get("data") or {}
        values, errors, warnings = self.prepare_values(table, columns, data, existing=previous, row_id=row_id)
        if errors:
            raise ValidationFailed(errors, "Row validation failed")
        row = self.row_store.update_row(table_id, row_id, values)
        self._invalidate(table_id, row_id)
        self._track(user, table, row_id, "update", previous, values)
        return {"row": row, "warnings": warnings}

    def delete_row(self, user: dict, table_id: str, row_id: str) -> None:
        table = self.tables.get_table(user, table_id, "write")
        current = self.row_store.get_row(table_id, row_id)
        if current is None:
            raise NotFoundError("Row not found", "row_id")
        self.row_store.delete_rows(table_id, [row_id])
        self._invalidate(table_id, row_id)
        self._track(user, table, row_id, "remove", current.get("data"), None)

    def mass_action(self, user: dict, table_id: str, payload: dict) -> dict:
        action = payload.get("action")
        if action not in ROW_MASS_ACTIONS:
            raise ValidationFailed([issue("INVALID_ACTION", f"Action {action} is not supported", "action")])
        row_ids = payload.get("row_ids")
        if not isinstance(row_ids, list) or not row_ids:
            raise ValidationFailed([issue("ROW_IDS_REQUIRED", "row_ids must be a non-empty list", "row_ids")])
        level = "read" if action == "export" else "write"
        table = self.tables.get_table(user, table_id, level)
        rows = [r for r in (self.row_store.get_row(table_id, rid) for rid in row_ids) if r is not None]

        if action == "export":
            return {"action": action, "affected": len(rows), "rows": rows}

        if action == "delete":
            deleted = self.row_store.delete_rows(table_id, [r["id"] for r in rows])
            for row in rows:
                self._track(user, table, row["id"], "remove", row.get("data"), None)
            self._invalidate(table_id)
            return {"action": action, "affected": deleted}

        field = payload.get("field")
        columns = self.tables.get_columns(table_id)
        if field not in {c["name"] for c in columns}:
            raise ValidationFailed([issue("UNKNOWN_FIELD", f"Field {field} is not a column of this table", "field")])
        # every row is checked before any write
        updated = 0
        prepared = []
        for row in rows:
            values, errors, _ = self.prepare_values(table, columns, {field: payload.get("value")}, existing=row.get("data") or {}, row_id=row["id"])
            if errors:
                raise ValidationFailed(errors, "Row validation failed")
            prepared.append((row, values))
        for row, values in prepared:
            self.row_store.update_row(table_id, row["id"], values)
            self._track(user, table, row["id"], "update", row.get("data"), values)
            updated += 1
        self._invalidate(table_id)
        return {"action": action, "affected": updated}

    def import_rows(self, user: dict, table_id: str, payload: dict) -> dict:
        """Store pre-parsed rows, remapping source keys via ``column_mapping``.

        Rows are stored even with type warnings; only non-object rows are
        skipped.
        """
        table = self.tables.get_table(user, table_id, "write")
        rows = payload.get("rows")
        if not isinstance(rows, list):
            raise ValidationFailed([issue("ROWS_REQUIRED", "rows must be a list", "rows")])
        mapping = payload.get("column_mapping") or {}
        if not isinstance(mapping, dict):
            raise ValidationFailed([issue("MAPPING_INVALID", "column_mapping must be an object", "column_mapping")])
        columns = self.tables.get_columns(table_id)
        known = {c["name"] for c in columns}
        imported = 0
        skipped = 0
        warning_count = 0
        row_warnings = []
        for idx, raw in enumerate(rows):
            if not isinstance(raw, dict):
                skipped += 1
                continue
            data = {}
            for key, value in raw.items():
                target = mapping.get(key, key)
                if target in known:
                    data[target] = value
            values, errors, warnings = self.prepare_values(table, columns, data, strict=False)
            found = errors + warnings
            if found:
                warning_count += len(found)
                if len(row_warnings) < 50:
                    row_warnings.append({"row": idx + 1, "issues": found})
            row = self.row_store.create_row(table_id, values)
            self._track(user, table, row["id"], "add", None, values)
            imported += 1
        self._invalidate(table_id)
        logger.info("rows_imported table=%s imported=%s skipped=%s warnings=%s", table_id, imported, skipped, warning_count)
        return {
            "imported": imported,
            "skipped": skipped,
            "warning_count": warning_count,
            "row_warnings": row_warnings,
        }

    def export(self, user: dict, table_id: str) -> dict:
        table = self.tables.get_table(user, table_id, "read")
        rows, total = self.row_store.list_rows(table_id)
        return {
            "table": {"id": table["id"], "name": table.get("name"), "table_type": table.get("table_type")},
            "columns": [{k: c.get(k) for k in ("name", "type", "is_required", "default_value")} for c in self.tables.get_columns(table_id)],
            "rows": [dict(r.get("data") or {}, id=r["id"]) for r in rows],
            "total": total,
            "exported_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

    def validate(self, user: dict, table_id: str) -> dict:
        self.tables.get_table(user, table_id, "read")
        rows, _ = self.row_store.list_rows(table_id)
        return column_types.validate_dataset(rows, self.tables.get_columns(table_id), self.tables.module_types())

    def delete_invalid_rows(self, user: dict, table_id: str) -> dict:
        table = self.tables.get_table(user, table_id, "manage")
        rows, _ = self.row_store.list_rows(table_id)
        report = column_types.validate_dataset(rows, self.tables.get_columns(table_id), self.tables.module_types())
        invalid = {r["row_id"] for r in report["rows"] if not r["is_valid"]}
        doomed = [r for r in rows if r["id"] in invalid]
        deleted = self.row_store.delete_rows(table_id, [r["id"] for r in doomed]) if doomed else 0
        for row in doomed:
            self._track(user, table, row["id"], "remove", row.get("data"), None)
        self._invalidate(table_id)
        logger.info("invalid_rows_deleted table=%s deleted=%s", table_id, deleted)
        return {"deleted": deleted, "remaining": report["total_rows"] - deleted}

    # public

    def search_records(self, user: dict, table_ids: list[str] | None, conditions: dict | None, limit: Any = None, offset: Any = None) -> dict:
        """Equality search across the caller's readable tables, cached briefly."""
        limit, offset = _page(limit, offset)
        conditions = {k: v for k, v in (conditions or {}).items() if v is not None}
        available = {t["id"]: t for t in self.tables.public_tables(user)}
        if table_ids:
            missing = [tid for tid in table_ids if tid not in available]
            if missing:
                raise ServiceError("TABLE_NOT_ACCESSIBLE", "One or more tables are not accessible", status=403, path="table_ids", detail={"tables": missing})
            targets = list(dict.fromkeys(table_ids))
        else:
            targets = sorted(available)
        if self.cache is not None:
            cached = self.cache.get_query_result(targets, conditions, limit, offset)
            if cached is not None:
                return dict(cached, cached=True)
        matches = []
        for table_id in targets:
            rows, _ = self.row_store.list_rows(table_id, filters=conditions or None)
            for row in rows:
                matches.append(dict(row, table_name=available[table_id].get("name")))
        result = {"items": matches[offset : offset + limit], "total": len(matches), "limit": limit, "offset": offset}
        if self.cache is not None:
            self.cache.set_query_result(targets, conditions, limit, offset, result)
        return dict(result, cached=False)

    def public_items(self, user: dict, table_id: str, params: dict | None = None) -> dict:
        self.public_table(user, table_id)
        limit, offset = _page((params or {}).get("limit"), (params or {}).get("offset"))
        rows, total = self.row_store.list_rows(
            table_id,
            filters=(params or {}).get("filters") or None,
            search=((params or {}).get("search") or "").strip() or None,
            limit=limit,
            offset=offset,
        )
        return {"items": self._with_formatted(table_id, rows), "total": total, "limit": limit, "offset": offset, "has_more": offset + len(rows) < total}

    def public_item(self, user: dict, table_id: str, row_id: str) -> dict:
        self.public_table(user, table_id)
        row = self.cache.get_item(table_id, row_id) if self.cache is not None else None
        if row is None:
            row = self.row_store.get_row(table_id, row_id)
            if row is None:
                raise NotFoundError("Item not found", "item_id")
            if self.cache is not None:
                self.cache.set_item(table_id, row_id, row)
        return self._with_formatted(table_id, [row])[0]

    def public_table(self, user: dict, table_id: str) -> dict:
        for table in self.tables.public_tables(user):
            if table["id"] == table_id:
                return table
        raise NotFoundError("Table not found", "table_id")
