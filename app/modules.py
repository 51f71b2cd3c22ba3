"""Module administration: install, toggle, uninstall and settings."""

from __future__ import annotations

import logging
import re
from typing import Any

from app.errors import NotFoundError, ServiceError, ValidationFailed, issue
from app.secrets import SECRET_MASK, SecretStoreError, decrypt_secret, encrypt_secret, is_masked

logger = logging.getLogger("tabula.modules")


def _setting_error(setting: dict, value: Any) -> str | None:
    label = setting.get("displayName") or setting.get("id")
    kind = setting.get("type")
    rules = setting.get("validation") or {}
    if kind == "number":
        if isinstance(value, bool):
            return f"{label} must be a number"
        try:
            number = float(value)
        except (TypeError, ValueError):
            return f"{label} must be a number"
        if rules.get("min") is not None and number < rules["min"]:
            return f"{label} must be at least {rules['min']}"
        if rules.get("max") is not None and number > rules["max"]:
            return f"{label} must be at most {rules['max']}"
        return None
    if kind == "boolean":
        if not isinstance(value, bool):
            return f"{label} must be true or false"
        return None
    if kind == "select":
        allowed = [o.get("value") if isinstance(o, dict) else o for o in setting.get("options") or []]
        if value not in allowed:
            return f"{label} must be one of: {', '.join(str(a) for a in allowed)}"
        return None
    if not isinstance(value, str):
        return f"{label} must be a string"
    if rules.get("min") is not None and len(value) < rules["min"]:
        return f"{label} must be at least {rules['min']} characters"
    if rules.get("max") is not None and len(value) > rules["max"]:
        return f"{label} must be at most {rules['max']} characters"
    pattern = rules.get("pattern")
    if pattern:
        try:
            if re.search(pattern, value) is None:
                return rules.get("patternMessage") or f"{label} has an invalid format"
        except re.error:
            return f"{label} has an invalid validation pattern"
    return None


def _coerce_setting(setting: dict, value: Any) -> Any:
    if setting.get("type") == "number" and isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return value
        return int(number) if number.is_integer() else number
    return value


class ModuleService:
    def __init__(self, registry, table_store) -> None:
        self.registry = registry
        self.table_store = table_store

    def _require(self, module_id: str) -> dict:
        record = self.registry.get(module_id)
        if record is None:
            raise NotFoundError("Module not found", "module_id")
        return record

    def list_modules(self) -> list[dict]:
        items = []
        for record in self.registry.list():
            manifest = self.registry.get_manifest(record["module_id"]) or {}
            item = dict(record)
            item["column_types"] = [
                {"type": f"{record['module_id']}:{t.get('id')}", "display_name": t.get("displayName")}
                for t in manifest.get("columnTypes") or []
            ]
            item["table_generators"] = [g.get("id") for g in manifest.get("tableGenerators") or []]
            item["has_settings"] = bool(manifest.get("settings"))
            items.append(item)
        return items

    def get_module(self, module_id: str) -> dict:
        record = self._require(module_id)
        record["manifest"] = self.registry.get_manifest(module_id)
        return record

    def install(self, manifest: dict, actor: dict | None = None) -> dict:
        result = self.registry.install(manifest, actor)
        if not result["ok"]:
            raise ValidationFailed(result["errors"], "Invalid module manifest")
        module = result["module"]
        defaults = {}
        for setting in (manifest.get("settings") or []):
            if setting.get("default") is not None and setting.get("type") != "secret":
                defaults[setting["id"]] = setting["default"]
        if defaults:
            stored = self.registry.get_settings(module["module_id"])
            self.registry.set_settings(module["module_id"], {**defaults, **stored}, actor)
        logger.info("module_installed id=%s version=%s hash=%s", module["module_id"], module.get("version"), module.get("current_hash"))
        return {"module": module, "warnings": result["warnings"]}

    def set_enabled(self, module_id: str, enabled: bool, actor: dict | None = None) -> dict:
        self._require(module_id)
        result = self.registry.set_enabled(module_id, enabled, actor, reason="api")
        logger.info("module_%s id=%s", "enabled" if enabled else "disabled", module_id)
        return {"module": result["module"], "warnings": result["warnings"]}

    def tables_using(self, module_id: str) -> list[dict]:
        prefix = f"{module_id}:"
        usage = []
        for table in self.table_store.list_tables(None):
            columns = [c for c in self.table_store.list_columns(table["id"]) if str(c.get("type") or "").startswith(prefix)]
            if columns:
                usage.append({"table_id": table["id"], "table_name": table.get("name"), "columns": [c.get("name") for c in columns]})
        return usage

    def uninstall(self, module_id: str, force: bool = False, actor: dict | None = None) -> dict:
        self._require(module_id)
        usage = self.tables_using(module_id)
        if usage and not force:
            raise ServiceError(
                "MODULE_IN_USE",
                "Module column types are used by existing tables",
                status=409,
                path="module_id",
                detail={"tables": usage},
            )
        self.registry.uninstall(module_id, actor)
        logger.info("module_uninstalled id=%s forced=%s tables=%s", module_id, force, len(usage))
        return {"module_id": module_id, "affected_tables": usage}

    def history(self, module_id: str) -> list[dict]:
        self._require(module_id)
        return self.registry.history(module_id)

    def _settings_schema(self, module_id: str) -> list[dict]:
        manifest = self.registry.get_manifest(module_id) or {}
        return [s for s in manifest.get("settings") or [] if isinstance(s, dict)]

    def get_settings(self, module_id: str) -> dict:
        """Current values with secrets masked, plus the settings schema."""
        self._require(module_id)
        schema = self._settings_schema(module_id)
        stored = self.registry.get_settings(module_id)
        values = {}
        for setting in schema:
            key = setting["id"]
            if key not in stored:
                values[key] = None if setting.get("type") == "secret" else setting.get("default")
            elif setting.get("type") == "secret":
                values[key] = SECRET_MASK if stored[key] else None
            else:
                values[key] = stored[key]
        return {"module_id": module_id, "values": values, "schema": schema}

    def update_settings(self, module_id: str, values: dict, actor: dict | None = None) -> dict:
        self._require(module_id)
        if not isinstance(values, dict):
            raise ValidationFailed([issue("SETTINGS_INVALID", "Settings must be an object", "values")])
        schema = {s["id"]: s for s in self._settings_schema(module_id)}
        stored = self.registry.get_settings(module_id)
        merged = dict(stored)
        errors = []
        for key, value in values.items():
            setting = schema.get(key)
            if setting is None:
                errors.append(issue("SETTINGS_UNKNOWN", f"Unknown setting: {key}", key))
                continue
            if setting.get("type") == "secret" and is_masked(value):
                continue
            if value is None or value == "":
                if setting.get("required"):
                    errors.append(issue("SETTINGS_REQUIRED", f"{setting.get('displayName') or key} is required", key))
                else:
                    merged.pop(key, None)
                continue
            value = _coerce_setting(setting, value)
            error = _setting_error(setting, value)
            if error:
                errors.append(issue("SETTINGS_INVALID", error, key))
                continue
            if setting.get("type") == "secret":
                try:
                    value = encrypt_secret(value)
                except SecretStoreError as exc:
                    errors.append(issue("SECRET_STORE_UNAVAILABLE", str(exc), key))
                    continue
            merged[key] = value
        for key, setting in schema.items():
            if setting.get("required") and key not in merged and setting.get("default") is None:
                errors.append(issue("SETTINGS_REQUIRED", f"{setting.get('displayName') or key} is required", key))
        if errors:
            raise ValidationFailed(errors, "Invalid module settings")
        self.registry.set_settings(module_id, merged, actor)
        logger.info("module_settings_updated id=%s keys=%s", module_id, ",".join(sorted(values.keys())))
        return self.get_settings(module_id)

    def resolve_setting(self, module_id: str, key: str) -> Any:
        """Plain value of a setting, secrets decrypted."""
        stored = self.registry.get_settings(module_id)
        schema = {s["id"]: s for s in self._settings_schema(module_id)}
        setting = schema.get(key) or {}
        if key not in stored:
            return setting.get("default")
        if setting.get("type") == "secret":
            return decrypt_secret(stored[key])
        return stored[key]
