"""Table and column management with per-token access rules."""

from __future__ import annotations

import logging
from typing import Any

from app import column_types
from app.errors import ForbiddenError, NotFoundError, ServiceError, ValidationFailed, issue
from app.table_schema import (
    RENTAL_PERIODS,
    TABLE_TYPES,
    VISIBILITIES,
    check_protected_change,
    fix_column_name,
    get_protected_columns,
    is_protected_column,
    missing_type_columns,
    normalize_table_type,
    validate_column_name,
)
from app.token_service import UNRESTRICTED_TOKEN_IDS

logger = logging.getLogger("tabula.tables")

ACCESS_LEVELS = ("read", "write", "manage")
COLUMN_MASS_ACTIONS = ("delete", "make_required", "make_optional")


def is_unrestricted(user: dict) -> bool:
    return bool(user.get("is_admin")) or user.get("token_id") in UNRESTRICTED_TOKEN_IDS


def _default_string(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class TableService:
    def __init__(self, table_store, row_store, cache=None, inventory=None, module_registry=None) -> None:
        self.table_store = table_store
        self.row_store = row_store
        self.cache = cache
        self.inventory = inventory
        self.module_registry = module_registry

    def module_types(self) -> dict:
        return self.module_registry.column_types() if self.module_registry is not None else {}

    # access

    def _explicit_access(self, user: dict, table: dict) -> bool:
        cached = self.cache.get_table_access(user["id"], table["id"]) if self.cache is not None else None
        if cached is not None:
            return cached
        allowed = table.get("user_id") == user.get("id") or table["id"] in (user.get("table_access") or [])
        if self.cache is not None:
            self.cache.set_table_access(user["id"], table["id"], allowed)
        return allowed

    def can_access(self, user: dict, table: dict, level: str = "read") -> bool:
        if table.get("workspace_id") != user.get("workspace_id"):
            return False
        if is_unrestricted(user):
            return True
        if table.get("user_id") == user.get("id"):
            return True
        if level == "manage":
            return False
        visibility = table.get("visibility")
        if visibility == "public":
            return True
        if visibility == "shared" and level == "read":
            return True
        return self._explicit_access(user, table)

    def get_table(self, user: dict, table_id: str, level: str = "read") -> dict:
        table = self.cache.get_table_metadata(table_id) if self.cache is not None else None
        if table is None:
            table = self.table_store.get_table(table_id)
            if table and self.cache is not None:
                self.cache.set_table_metadata(table_id, table)
        if not table or table.get("workspace_id") != user.get("workspace_id"):
            raise NotFoundError("Table not found", "table_id")
        if not self.can_access(user, table, level):
            raise ForbiddenError("You do not have access to this table", "table_id")
        return table

    def get_columns(self, table_id: str) -> list[dict]:
        columns = self.cache.get_table_columns(table_id) if self.cache is not None else None
        if columns is None:
            columns = self.table_store.list_columns(table_id)
            if self.cache is not None:
                self.cache.set_table_columns(table_id, columns)
        return columns

    def _refresh(self, table_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_all_table_caches(table_id)

    def row_count(self, table_id: str) -> int:
        count = self.cache.get_row_count(table_id) if self.cache is not None else None
        if count is None:
            count = self.row_store.count_rows(table_id)
            if self.cache is not None:
                self.cache.set_row_count(table_id, count)
        return count

    def describe(self, user: dict, table_id: str) -> dict:
        table = self.get_table(user, table_id)
        return {
            "table": table,
            "columns": self.get_columns(table_id),
            "row_count": self.row_count(table_id),
            "protected_columns": sorted(get_protected_columns(table.get("table_type"))),
            "can_manage": self.can_access(user, table, "manage"),
        }

    # tables

    def list_tables(self, user: dict, filters: dict | None = None, limit: int = 50, offset: int = 0) -> dict:
        filters = filters or {}
        search = (filters.get("search") or "").strip().lower()
        items = []
        for table in self.table_store.list_tables(user["workspace_id"]):
            if filters.get("visibility") and table.get("visibility") != filters["visibility"]:
                continue
            if filters.get("table_type") and table.get("table_type") != filters["table_type"]:
                continue
            if search and search not in (table.get("name") or "").lower() and search not in (table.get("description") or "").lower():
                continue
            if not self.can_access(user, table, "read"):
                continue
            items.append(table)
        total = len(items)
        page = items[offset : offset + limit]
        ids = [t["id"] for t in page]
        counts = self.cache.get_row_counts_batch(ids) if self.cache is not None else {}
        missing = {tid: self.row_store.count_rows(tid) for tid in ids if tid not in counts}
        if missing and self.cache is not None:
            self.cache.set_row_counts_batch(missing)
        counts.update(missing)
        for table in page:
            table["row_count"] = counts.get(table["id"], 0)
            table["can_manage"] = self.can_access(user, table, "manage")
        return {"items": page, "total": total, "limit": limit, "offset": offset}

    def _check_table_fields(self, payload: dict, errors: list, partial: bool = False) -> dict:
        values: dict = {}
        if not partial or "name" in payload:
            name = payload.get("name").strip() if isinstance(payload.get("name"), str) else ""
            if not name:
                errors.append(issue("TABLE_INVALID", "Table name is required", "name"))
            elif len(name) > 100:
                errors.append(issue("TABLE_INVALID", "Table name must be 100 characters or less", "name"))
            values["name"] = name
        if "description" in payload:
            values["description"] = payload.get("description")
        if not partial or "visibility" in payload:
            visibility = payload.get("visibility") or "private"
            if visibility not in VISIBILITIES:
                errors.append(issue("TABLE_INVALID", f"visibility must be one of {', '.join(VISIBILITIES)}", "visibility"))
            values["visibility"] = visibility
        if not partial or "table_type" in payload or "for_sale" in payload:
            requested = payload.get("table_type")
            if requested is not None and requested not in TABLE_TYPES:
                errors.append(issue("TABLE_INVALID", f"table_type must be one of {', '.join(TABLE_TYPES)}", "table_type"))
            values["table_type"] = normalize_table_type(requested, payload.get("for_sale"))
        if "rental_period" in payload:
            period = payload.get("rental_period")
            if period is not None and period not in RENTAL_PERIODS:
                errors.append(issue("TABLE_INVALID", f"rental_period must be one of {', '.join(RENTAL_PERIODS)}", "rental_period"))
            values["rental_period"] = period
        return values

    def _check_column(self, payload: dict, path: str, errors: list, module_types: dict, existing_names: set[str]) -> dict | None:
        checked = validate_column_name(payload.get("name"))
        if not checked["valid"]:
            errors.append(issue("COLUMN_INVALID", checked["error"], f"{path}.name"))
            return None
        name = checked["internal_name"]
        if name.lower() in existing_names:
            errors.append(issue("COLUMN_EXISTS", f"Column \"{name}\" already exists", f"{path}.name"))
            return None
        col_type = payload.get("type") or "text"
        if not column_types.is_known_type(col_type, module_types):
            errors.append(issue("COLUMN_TYPE_UNKNOWN", f"Unknown column type: {col_type}", f"{path}.type"))
            return None
        default = _default_string(payload.get("default_value"))
        if default is not None:
            result = column_types.validate_value(default, name, col_type, module_types, payload.get("options"))
            if not result["is_valid"]:
                errors.append(issue("COLUMN_DEFAULT_INVALID", f"Default value: {result['error']}", f"{path}.default_value"))
        existing_names.add(name.lower())
        return {
            "name": name,
            "type": col_type,
            "is_required": bool(payload.get("is_required")),
            "allow_duplicates": payload.get("allow_duplicates", True) is not False,
            "default_value": default,
            "position": payload.get("position"),
            "options": payload.get("options"),
        }

    def create_table(self, user: dict, payload: dict) -> dict:
        errors: list = []
        values = self._check_table_fields(payload, errors)
        module_types = self.module_types()
        names: set[str] = set()
        columns = []
        for idx, raw in enumerate(payload.get("columns") or []):
            if not isinstance(raw, dict):
                errors.append(issue("COLUMN_INVALID", "Column must be an object", f"columns[{idx}]"))
                continue
            column = self._check_column(raw, f"columns[{idx}]", errors, module_types, names)
            if column is not None:
                if column["position"] is None:
                    column["position"] = (idx + 1) * 10
                columns.append(column)
        if errors:
            raise ValidationFailed(errors)
        columns.extend(missing_type_columns(values["table_type"], columns))
        if values["table_type"] == "rent" and not values.get("rental_period"):
            values["rental_period"] = "day"
        table = self.table_store.create_table(dict(values, workspace_id=user["workspace_id"], user_id=user["id"]))
        for column in columns:
            self.table_store.create_column(table["id"], column)
        if self.cache is not None:
            self.cache.invalidate_public_tables()
        if self.inventory is not None and table["table_type"] == "sale":
            self.inventory.log(user["workspace_id"], table, None, "adjust", None, {"event": "table_created"}, created_by=user["id"])
        logger.info("table_created id=%s type=%s columns=%s", table["id"], table["table_type"], len(columns))
        return {"table": table, "columns": self.table_store.list_columns(table["id"])}

    def update_table(self, user: dict, table_id: str, payload: dict) -> dict:
        table = self.get_table(user, table_id, "manage")
        errors: list = []
        changes = self._check_table_fields(payload, errors, partial=True)
        if errors:
            raise ValidationFailed(errors)
        added = []
        new_type = changes.get("table_type", table.get("table_type"))
        if new_type != table.get("table_type"):
            for column in missing_type_columns(new_type, self.table_store.list_columns(table_id)):
                added.append(self.table_store.create_column(table_id, column))
            if new_type == "rent" and not (changes.get("rental_period") or table.get("rental_period")):
                changes["rental_period"] = "day"
        updated = self.table_store.update_table(table_id, changes)
        self._refresh(table_id)
        if added:
            logger.info("table_type_changed id=%s from=%s to=%s added=%s", table_id, table.get("table_type"), new_type, ",".join(c["name"] for c in added))
        return {"table": updated, "columns": self.table_store.list_columns(table_id), "added_columns": added}

    def delete_table(self, user: dict, table_id: str) -> None:
        self.get_table(user, table_id, "manage")
        deleted_rows = self.row_store.delete_all_rows(table_id)
        self.table_store.delete_table(table_id)
        self._refresh(table_id)
        logger.info("table_deleted id=%s rows=%s", table_id, deleted_rows)

    def clone_table(self, user: dict, table_id: str, payload: dict | None = None) -> dict:
        payload = payload or {}
        source = self.get_table(user, table_id, "read")
        errors: list = []
        visibility = self._check_table_fields({"visibility": payload.get("visibility")}, errors, partial=True)["visibility"]
        if errors:
            raise ValidationFailed(errors)
        name = payload.get("name") or f"{source.get('name')} (Copy)"
        clone = self.table_store.create_table(
            {
                "name": name[:100],
                "description": source.get("description"),
                "workspace_id": user["workspace_id"],
                "user_id": user["id"],
                "visibility": visibility,
                "table_type": source.get("table_type"),
                "rental_period": source.get("rental_period"),
            }
        )
        for column in self.table_store.list_columns(table_id):
            self.table_store.create_column(
                clone["id"],
                {k: column.get(k) for k in ("name", "type", "is_required", "allow_duplicates", "default_value", "position", "options")},
            )
        copied = 0
        if payload.get("include_data"):
            rows, _ = self.row_store.list_rows(table_id)
            for row in rows:
                self.row_store.create_row(clone["id"], row.get("data") or {})
                copied += 1
        if self.cache is not None:
            self.cache.invalidate_public_tables()
        logger.info("table_cloned source=%s clone=%s rows=%s", table_id, clone["id"], copied)
        return {"table": clone, "columns": self.table_store.list_columns(clone["id"]), "rows_copied": copied}

    # columns

    def _column(self, table_id: str, column_id: str) -> dict:
        column = self.table_store.get_column(table_id, column_id)
        if not column:
            raise NotFoundError("Column not found", "column_id")
        return column

    def add_column(self, user: dict, table_id: str, payload: dict) -> dict:
        self.get_table(user, table_id, "manage")
        existing = self.table_store.list_columns(table_id)
        errors: list = []
        column = self._check_column(payload, "column", errors, self.module_types(), {c["name"].lower() for c in existing})
        if errors:
            raise ValidationFailed(errors)
        if column["position"] is None:
            column["position"] = max((int(c.get("position") or 0) for c in existing), default=0) + 10
        created = self.table_store.create_column(table_id, column)
        self._refresh(table_id)
        return created

    def update_column(self, user: dict, table_id: str, column_id: str, payload: dict) -> dict:
        table = self.get_table(user, table_id, "manage")
        column = self._column(table_id, column_id)
        errors = check_protected_change(table.get("table_type"), column, payload)
        if errors:
            raise ServiceError("COLUMN_PROTECTED", errors[0]["message"], status=403, errors=errors)
        module_types = self.module_types()
        changes: dict = {}
        if "name" in payload and payload["name"] != column["name"]:
            checked = validate_column_name(payload.get("name"))
            if not checked["valid"]:
                raise ValidationFailed([issue("COLUMN_INVALID", checked["error"], "name")])
            others = {c["name"].lower() for c in self.table_store.list_columns(table_id) if c["id"] != column_id}
            if checked["internal_name"].lower() in others:
                raise ValidationFailed([issue("COLUMN_EXISTS", f"Column \"{checked['internal_name']}\" already exists", "name")])
            changes["name"] = checked["internal_name"]
        if "type" in payload and payload["type"] != column["type"]:
            if not column_types.is_known_type(payload["type"], module_types):
                raise ValidationFailed([issue("COLUMN_TYPE_UNKNOWN", f"Unknown column type: {payload['type']}", "type")])
            changes["type"] = payload["type"]
        for key in ("is_required", "allow_duplicates"):
            if key in payload:
                changes[key] = bool(payload[key])
        if "options" in payload:
            changes["options"] = payload["options"]
        if "position" in payload:
            changes["position"] = int(payload["position"] or 0)
        if "default_value" in payload:
            default = _default_string(payload["default_value"])
            if default is not None:
                result = column_types.validate_value(default, column["name"], changes.get("type", column["type"]), module_types)
                if not result["is_valid"]:
                    raise ValidationFailed([issue("COLUMN_DEFAULT_INVALID", f"Default value: {result['error']}", "default_value")])
            changes["default_value"] = default
        updated = self.table_store.update_column(table_id, column_id, changes)
        renamed = 0
        if "name" in changes:
            renamed = self._rename_row_key(table_id, column["name"], changes["name"])
        self._refresh(table_id)
        if renamed:
            logger.info("column_renamed table=%s from=%s to=%s rows=%s", table_id, column["name"], changes["name"], renamed)
        return updated

    def _rename_row_key(self, table_id: str, old: str, new: str) -> int:
        rows, _ = self.row_store.list_rows(table_id)
        updated = 0
        for row in rows:
            data = dict(row.get("data") or {})
            if old not in data:
                continue
            data[new] = data.pop(old)
            self.row_store.update_row(table_id, row["id"], data)
            updated += 1
        return updated

    def delete_column(self, user: dict, table_id: str, column_id: str) -> None:
        table = self.get_table(user, table_id, "manage")
        column = self._column(table_id, column_id)
        if is_protected_column(table.get("table_type"), column["name"]):
            raise ServiceError(
                "COLUMN_PROTECTED",
                f"Column \"{column['name']}\" is required for {table.get('table_type')} tables and cannot be deleted",
                status=403,
                path="column_id",
            )
        self.table_store.delete_column(table_id, column_id)
        self._refresh(table_id)

    def reorder_columns(self, user: dict, table_id: str, column_ids: list[str]) -> list[dict]:
        self.get_table(user, table_id, "manage")
        existing = {c["id"]: c for c in self.table_store.list_columns(table_id)}
        unknown = [cid for cid in column_ids if cid not in existing]
        if unknown or not column_ids:
            raise ValidationFailed([issue("COLUMN_ORDER_INVALID", "column_ids must list columns of this table", "column_ids", {"unknown": unknown})])
        ordered = list(dict.fromkeys(column_ids)) + [cid for cid in existing if cid not in column_ids]
        for idx, column_id in enumerate(ordered):
            self.table_store.update_column(table_id, column_id, {"position": (idx + 1) * 10})
        self._refresh(table_id)
        return self.table_store.list_columns(table_id)

    def column_mass_action(self, user: dict, table_id: str, action: str, column_ids: list[str]) -> dict:
        table = self.get_table(user, table_id, "manage")
        if action not in COLUMN_MASS_ACTIONS:
            raise ValidationFailed([issue("INVALID_ACTION", f"Action {action} is not supported", "action")])
        columns = [self._column(table_id, cid) for cid in column_ids]
        if action == "delete":
            protected = [c["name"] for c in columns if is_protected_column(table.get("table_type"), c["name"])]
            if protected:
                raise ServiceError(
                    "COLUMN_PROTECTED",
                    f"Cannot delete protected columns: {', '.join(protected)}",
                    status=403,
                    path="column_ids",
                )
            for column in columns:
                self.table_store.delete_column(table_id, column["id"])
        else:
            for column in columns:
                self.table_store.update_column(table_id, column["id"], {"is_required": action == "make_required"})
        self._refresh(table_id)
        return {"action": action, "affected": len(columns)}

    def fix_column_names(self, user: dict, table_id: str) -> dict:
        table = self.get_table(user, table_id, "manage")
        columns = self.table_store.list_columns(table_id)
        taken = {c["name"].lower() for c in columns}
        fixed = []
        for column in columns:
            if validate_column_name(column["name"]).get("internal_name") == column["name"]:
                continue
            if is_protected_column(table.get("table_type"), column["name"]):
                continue
            base = fix_column_name(column["name"])
            name = base
            counter = 2
            while name.lower() in taken:
                name = f"{base}{counter}"
                counter += 1
            taken.discard(column["name"].lower())
            taken.add(name.lower())
            self.table_store.update_column(table_id, column["id"], {"name": name})
            rows = self._rename_row_key(table_id, column["name"], name)
            fixed.append({"column_id": column["id"], "from": column["name"], "to": name, "rows_updated": rows})
        self._refresh(table_id)
        return {"fixed": fixed, "total": len(fixed)}

    def preview_type_change(self, user: dict, table_id: str, column_id: str, new_type: str) -> dict:
        self.get_table(user, table_id, "manage")
        column = self._column(table_id, column_id)
        module_types = self.module_types()
        if not column_types.is_known_type(new_type, module_types):
            raise ValidationFailed([issue("COLUMN_TYPE_UNKNOWN", f"Unknown column type: {new_type}", "new_type")])
        rows, _ = self.row_store.list_rows(table_id)
        return column_types.preview_type_change(rows, column["name"], column["type"], new_type, module_types)

    def apply_type_change(self, user: dict, table_id: str, column_id: str, new_type: str, convert_values: bool = True) -> dict:
        table = self.get_table(user, table_id, "manage")
        column = self._column(table_id, column_id)
        errors = check_protected_change(table.get("table_type"), column, {"type": new_type})
        if errors:
            raise ServiceError("COLUMN_PROTECTED", errors[0]["message"], status=403, errors=errors)
        module_types = self.module_types()
        if not column_types.is_known_type(new_type, module_types):
            raise ValidationFailed([issue("COLUMN_TYPE_UNKNOWN", f"Unknown column type: {new_type}", "new_type")])
        converted = 0
        if convert_values:
            rows, _ = self.row_store.list_rows(table_id)
            for row in rows:
                data = dict(row.get("data") or {})
                if column["name"] not in data:
                    continue
                value = data[column["name"]]
                if not column_types.can_coerce_value(value, new_type, module_types):
                    continue
                coerced = column_types.coerce_value(value, new_type, module_types)
                if coerced != value:
                    data[column["name"]] = coerced
                    self.row_store.update_row(table_id, row["id"], data)
                    converted += 1
        updated = self.table_store.update_column(table_id, column_id, {"type": new_type})
        self._refresh(table_id)
        if self.cache is not None:
            self.cache.invalidate_query_results([table_id])
        logger.info("column_type_changed table=%s column=%s from=%s to=%s converted=%s", table_id, column["name"], column["type"], new_type, converted)
        return {"column": updated, "converted_rows": converted}

    # public listing

    def public_tables(self, user: dict) -> list[dict]:
        """Public/shared tables in the token's workspace, narrowed by its table access."""
        tables = self.cache.get_public_tables() if self.cache is not None else None
        if tables is None:
            tables = [
                t
                for t in self.table_store.list_tables(None)
                if t.get("visibility") in ("public", "shared")
            ]
            if self.cache is not None:
                self.cache.set_public_tables(tables)
        allowed = None if is_unrestricted(user) or not user.get("table_access") else set(user["table_access"])
        items = []
        for table in tables:
            if table.get("workspace_id") != user.get("workspace_id"):
                continue
            if allowed is not None and table["id"] not in allowed:
                continue
            items.append(dict(table, row_count=self.row_count(table["id"])))
        return items
