"""Inventory transaction log for sale and rent tables."""

from __future__ import annotations

import logging

from app.errors import ValidationFailed, issue

logger = logging.getLogger("tabula.inventory")

TRANSACTION_TYPES = ("sale", "rent", "release", "add", "remove", "update", "adjust")
TRACKED_TABLE_TYPES = ("sale", "rent")


def _qty(data: dict | None) -> int:
    if not data:
        return 0
    try:
        return int(float(data.get("qty") or 0))
    except (TypeError, ValueError):
        return 0


def quantity_change(transaction_type: str, previous_data: dict | None, new_data: dict | None) -> int:
    if transaction_type == "add":
        return _qty(new_data)
    if transaction_type == "remove":
        return -_qty(previous_data)
    if transaction_type in ("rent", "release"):
        return 0
    return _qty(new_data) - _qty(previous_data)


class InventoryService:
    def __init__(self, store) -> None:
        self.store = store

    def log(
        self,
        workspace_id: str,
        table: dict,
        item_id: str,
        transaction_type: str,
        previous_data: dict | None = None,
        new_data: dict | None = None,
        reference_id: str | None = None,
        created_by: str | None = None,
    ) -> dict | None:
        """Record a transaction; failures are logged and swallowed."""
        if transaction_type not in TRANSACTION_TYPES:
            logger.warning("inventory_unknown_type type=%s table=%s", transaction_type, table.get("id"))
            return None
        try:
            record = self.store.create(
                {
                    "workspace_id": workspace_id,
                    "table_id": table.get("id"),
                    "table_name": table.get("name"),
                    "item_id": item_id,
                    "transaction_type": transaction_type,
                    "quantity_change": quantity_change(transaction_type, previous_data, new_data),
                    "previous_data": previous_data,
                    "new_data": new_data,
                    "reference_id": reference_id,
                    "created_by": created_by or "system",
                }
            )
        except Exception as exc:
            logger.error("inventory_log_failed table=%s item=%s type=%s error=%s", table.get("id"), item_id, transaction_type, exc)
            return None
        logger.debug("inventory_logged table=%s item=%s type=%s", table.get("id"), item_id, transaction_type)
        return record

    def track_row_change(
        self,
        workspace_id: str,
        table: dict,
        item_id: str,
        transaction_type: str,
        previous_data: dict | None = None,
        new_data: dict | None = None,
        created_by: str | None = None,
    ) -> None:
        if table.get("table_type") not in TRACKED_TABLE_TYPES:
            return
        self.log(workspace_id, table, item_id, transaction_type, previous_data, new_data, created_by=created_by)

    def list_transactions(self, workspace_id: str, filters: dict | None = None, limit: int = 50, offset: int = 0) -> dict:
        filters = {k: v for k, v in (filters or {}).items() if v}
        kind = filters.get("transaction_type")
        if kind and kind not in TRANSACTION_TYPES:
            raise ValidationFailed([issue("INVALID_TRANSACTION_TYPE", f"transaction_type must be one of {', '.join(TRANSACTION_TYPES)}", "transaction_type")])
        limit = max(1, min(int(limit or 50), 500))
        offset = max(0, int(offset or 0))
        items, total = self.store.list(workspace_id, filters, limit=limit, offset=offset)
        return {"items": items, "total": total, "limit": limit, "offset": offset, "has_more": offset + len(items) < total}

    def clear_all(self, workspace_id: str) -> int:
        deleted = self.store.clear(workspace_id)
        logger.warning("inventory_cleared workspace=%s deleted=%s", workspace_id, deleted)
        return deleted
