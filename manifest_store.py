"""In-memory module manifest snapshot store.

Every installed manifest is kept as an immutable, content-hashed snapshot; the
head pointer per module names the snapshot currently in effect.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from tabula import content_hash


Issue = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class ManifestStore:
    def __init__(self) -> None:
        self._snapshots: Dict[str, Dict[str, dict]] = {}
        self._head: Dict[str, str] = {}
        self._audit: Dict[str, List[dict]] = {}

    def get_head(self, module_id: str) -> str | None:
        return self._head.get(module_id)

    def get_snapshot(self, module_id: str, manifest_hash_value: str) -> dict:
        snapshots = self._snapshots.get(module_id, {})
        if manifest_hash_value not in snapshots:
            raise KeyError("Snapshot not found")
        return copy.deepcopy(snapshots[manifest_hash_value]["manifest"])

    def get_head_manifest(self, module_id: str) -> dict | None:
        head = self.get_head(module_id)
        if head is None:
            return None
        return self.get_snapshot(module_id, head)

    def list_history(self, module_id: str) -> list[dict]:
        return list(self._audit.get(module_id, []))

    def list_snapshots(self, module_id: str) -> list[dict]:
        items = []
        for record in self._snapshots.get(module_id, {}).values():
            items.append(
                {
                    "manifest_hash": record.get("manifest_hash"),
                    "created_at": record.get("created_at"),
                    "created_by": record.get("created_by"),
                    "reason": record.get("reason"),
                }
            )
        items.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return items

    def put_manifest(self, module_id: str, manifest: dict, actor: dict | None = None, reason: str = "install") -> dict:
        """Store ``manifest`` as a snapshot and move the head to it."""
        manifest_copy = copy.deepcopy(manifest)
        try:
            new_hash = content_hash(manifest_copy)
        except (TypeError, ValueError) as exc:
            return {
                "ok": False,
                "errors": [_issue("MANIFEST_INVALID", str(exc), "manifest")],
                "warnings": [],
                "from_hash": None,
                "to_hash": None,
            }
        from_hash = self._head.get(module_id)
        snapshots = self._snapshots.setdefault(module_id, {})
        if new_hash not in snapshots:
            snapshots[new_hash] = {
                "module_id": module_id,
                "manifest_hash": new_hash,
                "manifest": manifest_copy,
                "created_at": _now(),
                "created_by": actor,
                "reason": reason,
            }
        self._head[module_id] = new_hash
        warnings = []
        if from_hash == new_hash:
            warnings.append(_issue("MANIFEST_UNCHANGED", "manifest identical to current snapshot", "manifest"))
        self._audit.setdefault(module_id, []).insert(
            0,
            {
                "audit_id": str(uuid.uuid4()),
                "module_id": module_id,
                "action": reason,
                "from_hash": from_hash,
                "to_hash": new_hash,
                "actor": actor,
                "at": _now(),
            },
        )
        return {"ok": True, "errors": [], "warnings": warnings, "from_hash": from_hash, "to_hash": new_hash}

    def delete_module(self, module_id: str) -> None:
        self._snapshots.pop(module_id, None)
        self._head.pop(module_id, None)
        self._audit.pop(module_id, None)
