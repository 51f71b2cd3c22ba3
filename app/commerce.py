"""Purchases and rentals against public sale/rent tables."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

from app.errors import ForbiddenError, NotFoundError, ServiceError, ValidationFailed, issue
from app.table_schema import (
    RELEASED_STATE,
    RENTED_STATE,
    as_bool,
    can_release,
    can_rent,
    format_rental_number,
    format_sale_number,
    rental_state,
)

logger = logging.getLogger("tabula.commerce")

PUBLIC_VISIBILITIES = ("public", "shared")
SALE_STATUSES = ("completed", "refunded", "cancelled")
RENTAL_STATUSES = ("active", "released", "cancelled")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _number(value, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _positive_int(value, path: str) -> int:
    if isinstance(value, bool):
        raise ValidationFailed([issue("INVALID_QUANTITY", f"{path} must be a positive number", path)])
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed([issue("INVALID_QUANTITY", f"{path} must be a positive number", path)])
    if number < 1:
        raise ValidationFailed([issue("INVALID_QUANTITY", f"{path} must be a positive number", path)])
    return number


def _check_date(value: str | None, path: str) -> str | None:
    if value and not _DATE_RE.match(value):
        raise ValidationFailed([issue("INVALID_DATE", f"Invalid {path} format. Use YYYY-MM-DD", path)])
    return value or None


class CommerceService:
    def __init__(self, table_store, row_store, sale_store, rental_store, inventory, cache=None, tables=None) -> None:
        self.table_store = table_store
        self.row_store = row_store
        self.sale_store = sale_store
        self.rental_store = rental_store
        self.inventory = inventory
        self.cache = cache
        self.tables = tables

    def _table(self, user: dict, table_id: str | None) -> dict:
        if not table_id:
            raise ValidationFailed([issue("REQUIRED", "table_id is required", "table_id")])
        table = self.table_store.get_table(table_id)
        if not table or table.get("workspace_id") != user.get("workspace_id"):
            raise NotFoundError("Table not found", "table_id")
        return table

    def _public_table(self, user: dict, table_id: str) -> None:
        """Public/shared tables only, narrowed by the token table access."""
        if self.tables is None:
            return
        if table_id not in {t["id"] for t in self.tables.public_tables(user)}:
            raise NotFoundError("Table not found", "table_id")

    def _item(self, table_id: str, item_id: str | None) -> dict:
        if not item_id:
            raise ValidationFailed([issue("REQUIRED", "item_id is required", "item_id")])
        row = self.row_store.get_row(table_id, item_id)
        if not row:
            raise NotFoundError("Item not found", "item_id")
        return row

    def _save_item(self, table_id: str, row_id: str, data: dict) -> None:
        self.row_store.update_row(table_id, row_id, data)
        if self.cache is not None:
            self.cache.invalidate_table_data(table_id, row_id)

    def _sale_table(self, user: dict, table_id: str | None) -> dict:
        table = self._table(user, table_id)
        if table.get("visibility") not in PUBLIC_VISIBILITIES or table.get("table_type") != "sale":
            raise ForbiddenError("Table is not available for public sales", "table_id")
        return table

    def _rent_table(self, user: dict, table_id: str | None) -> dict:
        table = self._table(user, table_id)
        if table.get("visibility") not in PUBLIC_VISIBILITIES or table.get("table_type") != "rent":
            raise ForbiddenError("Table is not available for public rentals", "table_id")
        return table

    def check_availability(self, user: dict, table_id: str, item_id: str, quantity: int = 1) -> dict:
        table = self._table(user, table_id)
        row = self._item(table_id, item_id)
        data = row.get("data") or {}
        if table.get("visibility") not in PUBLIC_VISIBILITIES or table.get("table_type") not in ("sale", "rent"):
            raise ForbiddenError("Table is not available for public sales or rentals", "table_id")
        if _number(data.get("price")) <= 0:
            raise ForbiddenError("Item is not available", "item_id")
        if table["table_type"] == "rent":
            return {
                "table_type": "rent",
                "available": can_rent(data),
                "state": rental_state(data),
                "price": _number(data.get("price")),
                "fee": _number(data.get("fee")),
            }
        current_qty = int(_number(data.get("qty")))
        return {
            "table_type": "sale",
            "available": current_qty >= quantity,
            "current_qty": current_qty,
            "max_available": current_qty,
            "price": _number(data.get("price")),
        }

    # sales

    def purchase(self, user: dict, payload: dict) -> dict:
        if not payload.get("customer_id"):
            raise ValidationFailed([issue("REQUIRED", "customer_id is required", "customer_id")])
        quantity = _positive_int(payload.get("quantity_sold", 1), "quantity_sold")
        table = self._sale_table(user, payload.get("table_id"))
        row = self._item(table["id"], payload.get("item_id"))
        data = row.get("data") or {}
        price = _number(data.get("price"))
        if price <= 0:
            raise ForbiddenError("Item is not available for sale", "item_id")
        current_qty = int(_number(data.get("qty")))
        if current_qty < quantity:
            raise ServiceError(
                "INSUFFICIENT_QUANTITY",
                f"Insufficient quantity. Available: {current_qty}, Requested: {quantity}",
                path="quantity_sold",
                detail={"available": current_qty, "requested": quantity},
            )
        workspace_id = user["workspace_id"]
        year = datetime.now(timezone.utc).year
        sale = self.sale_store.create(
            {
                "workspace_id": workspace_id,
                "sale_number": format_sale_number(year, self.sale_store.next_sequence(workspace_id, year)),
                "table_id": table["id"],
                "table_name": table.get("name"),
                "item_id": row["id"],
                "item_snapshot": data,
                "customer_id": payload["customer_id"],
                "quantity_sold": quantity,
                "unit_price": price,
                "total_amount": round(price * quantity, 2),
                "sale_status": "completed",
                "payment_method": payload.get("payment_method"),
                "notes": payload.get("notes"),
                "created_by": user.get("id"),
            }
        )
        new_data = dict(data, qty=current_qty - quantity)
        self._save_item(table["id"], row["id"], new_data)
        self.inventory.log(workspace_id, table, row["id"], "sale", data, new_data, reference_id=sale["id"], created_by=user.get("id"))
        logger.info("sale_completed sale=%s table=%s item=%s qty=%s total=%.2f", sale["sale_number"], table["id"], row["id"], quantity, sale["total_amount"])
        return sale

    def list_sales(self, user: dict, filters: dict | None = None) -> list[dict]:
        filters = dict(filters or {})
        status = filters.pop("sale_status", None)
        _check_date(filters.get("date_from"), "date_from")
        _check_date(filters.get("date_to"), "date_to")
        sales = self.sale_store.list(user["workspace_id"], {k: v for k, v in filters.items() if v})
        if status:
            sales = [s for s in sales if s.get("sale_status") == status]
        if filters.get("customer_id"):
            sales = [s for s in sales if s.get("customer_id") == filters["customer_id"]]
        return sales

    def sales_analytics(self, user: dict, date_from: str | None = None, date_to: str | None = None, table_id: str | None = None) -> dict:
        sales = self.list_sales(user, {"date_from": date_from, "date_to": date_to, "table_id": table_id})
        completed = [s for s in sales if s.get("sale_status") == "completed"]
        by_table: dict[str, dict] = {}
        by_day: dict[str, dict] = {}
        for sale in completed:
            entry = by_table.setdefault(
                sale["table_id"],
                {"table_id": sale["table_id"], "table_name": sale.get("table_name"), "sales_count": 0, "revenue": 0.0, "items_sold": 0},
            )
            entry["sales_count"] += 1
            entry["revenue"] = round(entry["revenue"] + _number(sale.get("total_amount")), 2)
            entry["items_sold"] += int(sale.get("quantity_sold") or 0)
            day = (sale.get("created_at") or "")[:10]
            bucket = by_day.setdefault(day, {"date": day, "sales_count": 0, "revenue": 0.0})
            bucket["sales_count"] += 1
            bucket["revenue"] = round(bucket["revenue"] + _number(sale.get("total_amount")), 2)
        total_revenue = round(sum(_number(s.get("total_amount")) for s in completed), 2)
        return {
            "total_sales": len(completed),
            "total_revenue": total_revenue,
            "total_items_sold": sum(int(s.get("quantity_sold") or 0) for s in completed),
            "average_sale_value": round(total_revenue / len(completed), 2) if completed else 0,
            "sales_by_status": {status: sum(1 for s in sales if s.get("sale_status") == status) for status in SALE_STATUSES},
            "top_tables": sorted(by_table.values(), key=lambda t: t["revenue"], reverse=True)[:10],
            "daily": sorted(by_day.values(), key=lambda d: d["date"]),
        }

    def sales_summary(self, user: dict) -> dict:
        today = datetime.now(timezone.utc).date()
        periods = {
            "today": (today.isoformat(), today.isoformat()),
            "week": ((today - timedelta(days=7)).isoformat(), None),
            "month": ((today - timedelta(days=30)).isoformat(), None),
            "all_time": (None, None),
        }
        summary = {}
        for name, (date_from, date_to) in periods.items():
            stats = self.sales_analytics(user, date_from, date_to)
            summary[name] = {
                "total_sales": stats["total_sales"],
                "total_revenue": stats["total_revenue"],
                "total_items_sold": stats["total_items_sold"],
            }
        return summary

    # rentals

    def rent(self, user: dict, payload: dict) -> dict:
        table = self._rent_table(user, payload.get("table_id"))
        row = self._item(table["id"], payload.get("item_id"))
        data = row.get("data") or {}
        price = _number(data.get("price"))
        if price <= 0:
            raise ForbiddenError("Item is not available for rent", "item_id")
        if not can_rent(data):
            if as_bool(data.get("used")):
                message = "Item has already been used and cannot be rented again"
            else:
                message = "Item is currently rented and not available"
            raise ServiceError("ITEM_NOT_AVAILABLE", message, path="item_id", detail={"state": rental_state(data)})
        workspace_id = user["workspace_id"]
        year = datetime.now(timezone.utc).year
        rental = self.rental_store.create(
            {
                "workspace_id": workspace_id,
                "rental_number": format_rental_number(year, self.rental_store.next_sequence(workspace_id, year)),
                "table_id": table["id"],
                "table_name": table.get("name"),
                "item_id": row["id"],
                "item_snapshot": data,
                "customer_id": payload.get("customer_id"),
                "rental_price": price,
                "rental_fee": _number(data.get("fee")),
                "rental_period": table.get("rental_period"),
                "status": "active",
                "notes": payload.get("notes"),
                "released_at": None,
                "created_by": user.get("id"),
            }
        )
        new_data = dict(data, **RENTED_STATE)
        self._save_item(table["id"], row["id"], new_data)
        self.inventory.log(workspace_id, table, row["id"], "rent", data, new_data, reference_id=rental["id"], created_by=user.get("id"))
        logger.info("rental_started rental=%s table=%s item=%s", rental["rental_number"], table["id"], row["id"])
        return rental

    def release(self, user: dict, payload: dict) -> dict:
        if payload.get("rental_id"):
            rental = self.rental_store.get(payload["rental_id"])
            if not rental or rental.get("workspace_id") != user.get("workspace_id"):
                raise NotFoundError("Rental not found", "rental_id")
        elif payload.get("table_id") and payload.get("item_id"):
            rental = self.rental_store.find_active_by_item(payload["table_id"], payload["item_id"])
            if not rental or rental.get("workspace_id") != user.get("workspace_id"):
                raise NotFoundError("No active rental found for this item", "item_id")
        else:
            raise ValidationFailed([issue("REQUIRED", "Either rental_id or both item_id and table_id are required", "rental_id")])
        self._public_table(user, rental["table_id"])
        if rental.get("status") != "active":
            raise ServiceError("RENTAL_NOT_ACTIVE", f"Rental is already {rental.get('status')}", path="rental_id")
        table = self._table(user, rental["table_id"])
        if table.get("table_type") != "rent":
            raise ForbiddenError("Table is not a rental table", "table_id")
        row = self._item(table["id"], rental["item_id"])
        data = row.get("data") or {}
        if not can_release(data):
            if as_bool(data.get("used")):
                message = "Item has already been released and marked as used"
            else:
                message = "Item is not currently rented (it is available)"
            raise ServiceError("ITEM_NOT_RELEASABLE", message, path="item_id", detail={"state": rental_state(data)})
        released = self.rental_store.update(
            rental["id"],
            {
                "status": "released",
                "released_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "notes": payload.get("notes") or rental.get("notes"),
            },
        )
        new_data = dict(data, **RELEASED_STATE)
        self._save_item(table["id"], row["id"], new_data)
        self.inventory.log(user["workspace_id"], table, row["id"], "release", data, new_data, reference_id=rental["id"], created_by=user.get("id"))
        logger.info("rental_released rental=%s table=%s item=%s", rental.get("rental_number"), table["id"], row["id"])
        return released

    def list_rentals(self, user: dict, filters: dict | None = None) -> dict:
        filters = dict(filters or {})
        _check_date(filters.get("date_from"), "date_from")
        _check_date(filters.get("date_to"), "date_to")
        if filters.get("status") and filters["status"] not in RENTAL_STATUSES:
            raise ValidationFailed([issue("INVALID_STATUS", f"status must be one of {', '.join(RENTAL_STATUSES)}", "status")])
        rentals = self.rental_store.list(user["workspace_id"], {k: v for k, v in filters.items() if v})
        return {
            "items": rentals,
            "total": len(rentals),
            "by_status": {status: sum(1 for r in rentals if r.get("status") == status) for status in RENTAL_STATUSES},
            "total_revenue": round(sum(_number(r.get("rental_price")) + _number(r.get("rental_fee")) for r in rentals), 2),
        }
