"""In-memory module registry: install, enable/disable and uninstall JSON modules."""

from __future__ import annotations

import copy
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.type_handlers import FORMAT_HANDLERS, VALIDATION_HANDLERS
from manifest_store import ManifestStore


Issue = Dict[str, Any]

MODULE_ID_RE = re.compile(r"^(@[a-z0-9][a-z0-9-]*/)?[a-z0-9][a-z0-9._-]*$")
TYPE_ID_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
VERSION_RE = re.compile(r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$")

SETTING_TYPES = ("string", "number", "boolean", "select", "secret")
BASE_TYPES = ("string", "number", "boolean", "json")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _check_validation_rule(rule: Any, path: str, errors: list[Issue], handlers: tuple) -> None:
    if not isinstance(rule, dict):
        errors.append(_issue("MANIFEST_INVALID", "validation must be an object", path))
        return
    handler = rule.get("handler")
    if handler not in handlers:
        errors.append(_issue("MANIFEST_UNKNOWN_HANDLER", f"unknown validation handler: {handler}", f"{path}.handler"))
        return
    if handler == "regex":
        try:
            re.compile(rule.get("pattern") or "")
        except re.error:
            errors.append(_issue("MANIFEST_INVALID", "regex pattern does not compile", f"{path}.pattern"))
    if handler == "enum" and not isinstance(rule.get("values"), list):
        errors.append(_issue("MANIFEST_INVALID", "enum handler requires values", f"{path}.values"))
    if handler == "composite":
        for idx, sub in enumerate(rule.get("rules") or []):
            _check_validation_rule(sub, f"{path}.rules[{idx}]", errors, handlers)


def validate_manifest(manifest: Any) -> dict:
    """Structural checks of a module manifest.

    Returns ``{"ok", "errors", "warnings"}``; nothing is executed, manifests
    only reference the built-in validation and format handlers by name.
    """
    errors: List[Issue] = []
    warnings: List[Issue] = []
    if not isinstance(manifest, dict):
        errors.append(_issue("MANIFEST_INVALID", "manifest must be an object", "manifest"))
        return {"ok": False, "errors": errors, "warnings": warnings}

    module_id = manifest.get("id")
    if not isinstance(module_id, str) or not MODULE_ID_RE.match(module_id):
        errors.append(_issue("MANIFEST_INVALID_ID", "id must look like 'name' or '@scope/name'", "id"))
    if not isinstance(manifest.get("name"), str) or not manifest["name"].strip():
        errors.append(_issue("MANIFEST_REQUIRED", "name is required", "name"))
    version = manifest.get("version")
    if not isinstance(version, str) or not VERSION_RE.match(version):
        errors.append(_issue("MANIFEST_INVALID_VERSION", "version must be semver (x.y.z)", "version"))

    seen_types: set[str] = set()
    column_types = manifest.get("columnTypes") or []
    if not isinstance(column_types, list):
        errors.append(_issue("MANIFEST_INVALID", "columnTypes must be a list", "columnTypes"))
        column_types = []
    for idx, definition in enumerate(column_types):
        path = f"columnTypes[{idx}]"
        if not isinstance(definition, dict):
            errors.append(_issue("MANIFEST_INVALID", "column type must be an object", path))
            continue
        type_id = definition.get("id")
        if not isinstance(type_id, str) or not TYPE_ID_RE.match(type_id):
            errors.append(_issue("MANIFEST_INVALID", "column type id is invalid", f"{path}.id"))
        elif type_id in seen_types:
            errors.append(_issue("MANIFEST_DUPLICATE_TYPE", f"duplicate column type: {type_id}", f"{path}.id"))
        else:
            seen_types.add(type_id)
        if not definition.get("displayName"):
            warnings.append(_issue("MANIFEST_MISSING_DISPLAY_NAME", "column type has no displayName", f"{path}.displayName"))
        base = definition.get("baseType") or "string"
        if base not in BASE_TYPES:
            errors.append(_issue("MANIFEST_INVALID", f"baseType must be one of {', '.join(BASE_TYPES)}", f"{path}.baseType"))
        if definition.get("validation") is not None:
            _check_validation_rule(definition["validation"], f"{path}.validation", errors, VALIDATION_HANDLERS)
        fmt = definition.get("format")
        if fmt is not None and (not isinstance(fmt, dict) or fmt.get("handler") not in FORMAT_HANDLERS):
            errors.append(_issue("MANIFEST_UNKNOWN_HANDLER", "unknown format handler", f"{path}.format"))
        source = definition.get("source")
        if source is not None and (not isinstance(source, dict) or source.get("type") != "static" or not isinstance(source.get("values"), list)):
            errors.append(_issue("MANIFEST_INVALID", "source must be {type: static, values: [...]}", f"{path}.source"))

    seen_settings: set[str] = set()
    for idx, setting in enumerate(manifest.get("settings") or []):
        path = f"settings[{idx}]"
        if not isinstance(setting, dict) or not isinstance(setting.get("id"), str) or not setting.get("id"):
            errors.append(_issue("MANIFEST_INVALID", "setting id is required", path))
            continue
        if setting["id"] in seen_settings:
            errors.append(_issue("MANIFEST_DUPLICATE_SETTING", f"duplicate setting: {setting['id']}", f"{path}.id"))
        seen_settings.add(setting["id"])
        if setting.get("type") not in SETTING_TYPES:
            errors.append(_issue("MANIFEST_INVALID", f"setting type must be one of {', '.join(SETTING_TYPES)}", f"{path}.type"))
        if setting.get("type") == "select" and not setting.get("options"):
            errors.append(_issue("MANIFEST_INVALID", "select settings require options", f"{path}.options"))

    for idx, generator in enumerate(manifest.get("tableGenerators") or []):
        path = f"tableGenerators[{idx}]"
        if not isinstance(generator, dict) or not generator.get("id"):
            errors.append(_issue("MANIFEST_INVALID", "table generator id is required", path))
            continue
        if not isinstance(generator.get("columns"), list) or not generator["columns"]:
            errors.append(_issue("MANIFEST_INVALID", "table generator requires columns", f"{path}.columns"))

    return {"ok": not errors, "errors": errors, "warnings": warnings}


class ModuleRegistry:
    def __init__(self, manifest_store: ManifestStore) -> None:
        self._store = manifest_store
        self._modules: Dict[str, dict] = {}
        self._settings: Dict[str, dict] = {}
        self._audit: Dict[str, List[dict]] = {}

    def get(self, module_id: str) -> dict | None:
        record = self._modules.get(module_id)
        return copy.deepcopy(record) if record else None

    def list(self) -> list[dict]:
        return [copy.deepcopy(self._modules[mid]) for mid in sorted(self._modules.keys())]

    def history(self, module_id: str) -> list[dict]:
        return list(self._audit.get(module_id, []))

    def get_manifest(self, module_id: str) -> dict | None:
        if module_id not in self._modules:
            return None
        return self._store.get_head_manifest(module_id)

    def _add_audit(self, module_id: str, action: str, from_hash: str | None, to_hash: str | None, actor: dict | None, reason: str | None) -> str:
        audit_id = str(uuid.uuid4())
        self._audit.setdefault(module_id, []).insert(
            0,
            {
                "audit_id": audit_id,
                "module_id": module_id,
                "action": action,
                "from_hash": from_hash,
                "to_hash": to_hash,
                "actor": actor,
                "reason": reason,
                "at": _now(),
            },
        )
        return audit_id

    def install(self, manifest: dict, actor: dict | None = None) -> dict:
        """Validate and store ``manifest``; a known module id is upgraded in place."""
        checked = validate_manifest(manifest)
        if not checked["ok"]:
            return {"ok": False, "errors": checked["errors"], "warnings": checked["warnings"], "module": None, "audit_id": None}
        module_id = manifest["id"]
        existing = self._modules.get(module_id)
        action = "upgrade" if existing else "install"
        stored = self._store.put_manifest(module_id, manifest, actor, reason=action)
        if not stored["ok"]:
            return {"ok": False, "errors": stored["errors"], "warnings": checked["warnings"], "module": None, "audit_id": None}

        now = _now()
        record = existing or {
            "module_id": module_id,
            "enabled": True,
            "status": "active",
            "installed_at": now,
            "last_error": None,
        }
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
        self._modules[module_id] = record
        self._settings.setdefault(module_id, {})
        audit_id = self._add_audit(module_id, action, stored["from_hash"], stored["to_hash"], actor, action)
        warnings = checked["warnings"] + stored["warnings"]
        return {"ok": True, "errors": [], "warnings": warnings, "module": copy.deepcopy(record), "audit_id": audit_id}

    def set_enabled(self, module_id: str, enabled: bool, actor: dict | None = None, reason: str = "toggle") -> dict:
        record = self._modules.get(module_id)
        if record is None:
            return {"ok": False, "errors": [_issue("MODULE_NOT_FOUND", "module not found", "module_id")], "warnings": [], "module": None, "audit_id": None}
        warnings: List[Issue] = []
        if bool(record.get("enabled")) == bool(enabled):
            warnings.append(_issue("MODULE_STATE_UNCHANGED", "module already in requested state", "enabled"))
        record["enabled"] = bool(enabled)
        record["status"] = "active" if enabled else "disabled"
        record["updated_at"] = _now()
        action = "enable" if enabled else "disable"
        audit_id = self._add_audit(module_id, action, record.get("current_hash"), record.get("current_hash"), actor, reason)
        return {"ok": True, "errors": [], "warnings": warnings, "module": copy.deepcopy(record), "audit_id": audit_id}

    def uninstall(self, module_id: str, actor: dict | None = None) -> dict:
        record = self._modules.pop(module_id, None)
        if record is None:
            return {"ok": False, "errors": [_issue("MODULE_NOT_FOUND", "module not found", "module_id")], "warnings": []}
        self._settings.pop(module_id, None)
        self._store.delete_module(module_id)
        self._add_audit(module_id, "uninstall", record.get("current_hash"), None, actor, "uninstall")
        return {"ok": True, "errors": [], "warnings": []}

    def get_settings(self, module_id: str) -> dict:
        return copy.deepcopy(self._settings.get(module_id, {}))

    def set_settings(self, module_id: str, values: dict, actor: dict | None = None) -> dict:
        if module_id not in self._modules:
            raise KeyError("module not found")
        self._settings[module_id] = copy.deepcopy(values)
        self._add_audit(module_id, "settings", None, None, actor, "settings")
        return copy.deepcopy(values)

    def column_types(self) -> dict[str, dict]:
        """``"{module_id}:{type_id}"`` -> type definition, enabled modules only."""
        types: dict[str, dict] = {}
        for module_id, record in self._modules.items():
            if not record.get("enabled"):
                continue
            manifest = self._store.get_head_manifest(module_id) or {}
            for definition in manifest.get("columnTypes") or []:
                types[f"{module_id}:{definition['id']}"] = copy.deepcopy(definition)
        return types

    def table_generators(self) -> list[dict]:
        generators = []
        for module_id in sorted(self._modules.keys()):
            if not self._modules[module_id].get("enabled"):
                continue
            manifest = self._store.get_head_manifest(module_id) or {}
            for generator in manifest.get("tableGenerators") or []:
                item = copy.deepcopy(generator)
                item["module_id"] = module_id
                generators.append(item)
        return generators
