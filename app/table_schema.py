"""Table-type rules: protected columns, naming, rental state, numbering."""

from __future__ import annotations

import re
from typing import Any

from app.errors import issue

TABLE_TYPES = ("default", "sale", "rent")
VISIBILITIES = ("private", "public", "shared")
RENTAL_PERIODS = ("hour", "day", "week", "month", "year")

_DEFAULT_COLUMNS: dict[str, list[dict]] = {
    "sale": [
        {"name": "price", "type": "number", "is_required": True, "default_value": None},
        {"name": "qty", "type": "integer", "is_required": True, "default_value": "1"},
    ],
    "rent": [
        {"name": "price", "type": "number", "is_required": True, "default_value": None},
        {"name": "fee", "type": "number", "is_required": True, "default_value": "0"},
        {"name": "used", "type": "boolean", "is_required": False, "default_value": "false"},
        {"name": "available", "type": "boolean", "is_required": False, "default_value": "true"},
    ],
}

_DISPLAY_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\s]*$")
_INTERNAL_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9]*$")


def normalize_table_type(table_type: Any = None, for_sale: Any = None) -> str:
    if isinstance(table_type, str) and table_type in TABLE_TYPES:
        return table_type
    if for_sale is True:
        return "sale"
    return "default"


def get_default_columns(table_type: str) -> list[dict]:
    return [dict(col) for col in _DEFAULT_COLUMNS.get(table_type, [])]


def get_protected_columns(table_type: str) -> set[str]:
    return {col["name"] for col in _DEFAULT_COLUMNS.get(table_type, [])}


def is_protected_column(table_type: str, column_name: str) -> bool:
    return column_name in get_protected_columns(table_type)


def missing_type_columns(table_type: str, existing_columns: list[dict]) -> list[dict]:
    """Type columns absent from ``existing_columns``, positioned after the last column."""
    names = {c.get("name") for c in existing_columns}
    position = max((int(c.get("position") or 0) for c in existing_columns), default=0)
    missing = []
    for col in get_default_columns(table_type):
        if col["name"] in names:
            continue
        position += 10
        col["position"] = position
        missing.append(col)
    return missing


def check_protected_change(table_type: str, column: dict, changes: dict) -> list[dict]:
    """Issues raised when ``changes`` would rename or retype a protected column."""
    name = column.get("name")
    if not is_protected_column(table_type, name):
        return []
    errors = []
    if "name" in changes and changes["name"] != name:
        errors.append(issue("COLUMN_PROTECTED", f"Column \"{name}\" is required for {table_type} tables and cannot be renamed", "name"))
    if "type" in changes and changes["type"] != column.get("type"):
        errors.append(issue("COLUMN_PROTECTED", f"Column \"{name}\" is required for {table_type} tables and cannot change type", "type"))
    return errors


def to_internal_name(display_name: str) -> str:
    """Convert a display name such as ``Monthly Cost`` to ``monthlyCost``."""
    words = [w for w in (display_name or "").split() if w]
    return "".join(w.lower() if i == 0 else w[0].upper() + w[1:].lower() for i, w in enumerate(words))


def to_display_name(internal_name: str) -> str:
    """Convert ``monthlyCost`` back to ``Monthly Cost``."""
    spaced = re.sub(r"([A-Z])", r" \1", internal_name or "")
    return " ".join(w[0].upper() + w[1:].lower() for w in spaced.split())


def fix_column_name(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z\s]", "", name or "")
    if not cleaned.strip():
        return "column"
    return to_internal_name(cleaned)


def validate_column_name(name: Any) -> dict:
    if not isinstance(name, str) or not name.strip():
        return {"valid": False, "error": "Column name is required"}
    trimmed = name.strip()
    if len(trimmed) > 100:
        return {"valid": False, "error": "Column name must be 100 characters or less"}
    if not _DISPLAY_NAME_RE.match(trimmed):
        return {"valid": False, "error": "Column name can only contain Latin letters (a-z, A-Z) and spaces"}
    # single words keep their casing so existing camelCase names survive a round trip
    internal = trimmed if " " not in trimmed and _INTERNAL_NAME_RE.match(trimmed) and trimmed[0].islower() else to_internal_name(trimmed)
    return {"valid": True, "internal_name": internal}


# rentals


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def can_rent(row: dict) -> bool:
    return not as_bool(row.get("used")) and as_bool(row.get("available", True))


def can_release(row: dict) -> bool:
    return not as_bool(row.get("used")) and not as_bool(row.get("available", True))


def rental_state(row: dict) -> str:
    if as_bool(row.get("used")):
        return "used"
    if as_bool(row.get("available", True)):
        return "available"
    return "rented"


RENTED_STATE = {"used": False, "available": False}
RELEASED_STATE = {"used": True, "available": False}


# numbering


def format_sale_number(year: int, sequence: int) -> str:
    return f"SALE-{year}-{sequence:03d}"


def format_rental_number(year: int, sequence: int) -> str:
    return f"RENT-{year}-{sequence:03d}"
