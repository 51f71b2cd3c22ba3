"""Column type registry, value validation and coercion.

Validation follows a warn-don't-block model: every check returns a result
describing the problem (and, where useful, how to fix it). Callers decide
whether a failure blocks the write.

Module column types are addressed as ``"{module_id}:{type_id}"`` and resolve
through a mapping supplied by the module registry. When a module type is not
registered, the part after the last ``:`` is tried as a built-in type; types
that resolve to nothing accept any value.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

from app import type_handlers
from app.type_handlers import parse_bool

BUILT_IN_COLUMN_TYPES: list[dict] = [
    {"type": "text", "description": "Any text value", "example": "Hello World", "category": "text"},
    {"type": "textarea", "description": "Multi-line text", "example": "Line 1\nLine 2", "category": "text"},
    {"type": "email", "description": "Valid email address", "example": "user@example.com", "category": "text"},
    {"type": "url", "description": "Valid URL with protocol", "example": "https://example.com", "category": "text"},
    {"type": "phone", "description": "Phone number (international format)", "example": "+1 (555) 123-4567", "category": "text"},
    {"type": "country", "description": "2-3 letter ISO country code", "example": "US", "category": "text"},
    {"type": "integer", "description": "Whole number only", "example": "42", "category": "number"},
    {"type": "float", "description": "Decimal number", "example": "3.14159", "category": "number"},
    {"type": "currency", "description": "Number with max 2 decimals", "example": "99.99", "category": "number"},
    {"type": "percentage", "description": "Number 0-100", "example": "75", "category": "number"},
    {"type": "number", "description": "Any numeric value", "example": "123.45", "category": "number", "deprecated": True},
    {"type": "date", "description": "Date in YYYY-MM-DD format", "example": "2024-01-15", "category": "date"},
    {"type": "time", "description": "Time in HH:MM format", "example": "14:30", "category": "date"},
    {"type": "datetime", "description": "ISO datetime", "example": "2024-01-15T14:30:00Z", "category": "date"},
    {"type": "boolean", "description": "true/false, yes/no, 1/0", "example": "true", "category": "choice"},
    {"type": "select", "description": "Selection from options", "example": "Option A", "category": "choice"},
    {"type": "rating", "description": "Rating 1-5", "example": "4", "category": "choice"},
    {"type": "color", "description": "Hex color code", "example": "#ff0000", "category": "other"},
    {"type": "multiselect", "description": "Several options", "example": "[\"a\", \"b\"]", "category": "choice"},
]
BUILT_IN_TYPE_NAMES = {t["type"] for t in BUILT_IN_COLUMN_TYPES}
NUMERIC_TYPES = {"number", "integer", "float", "currency", "percentage", "rating"}

_PHONE_RE = re.compile(r"^[\+]?[0-9\s\-\(\)\.]{7,20}$")
_COUNTRY_RE = re.compile(r"^[A-Z]{2,3}$", re.IGNORECASE)
_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9](:[0-5][0-9])?$")
_COLOR_RE = re.compile(r"^#?([0-9A-Fa-f]{3}|[0-9A-Fa-f]{6}|[0-9A-Fa-f]{8})$")
_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d.%m.%Y", "%b %d %Y", "%B %d %Y", "%d %b %Y", "%d %B %Y")


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def is_module_type(column_type: str) -> bool:
    return isinstance(column_type, str) and ":" in column_type


def base_type(column_type: str) -> str:
    if not isinstance(column_type, str):
        return ""
    return column_type.rsplit(":", 1)[-1] if ":" in column_type else column_type


# parsing helpers


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        if number != number or number in (float("inf"), float("-inf")):
            return None
        return number
    return None


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        parsed = parse_date(value)
        return datetime(parsed.year, parsed.month, parsed.day) if parsed else None


def parse_multi(value: Any) -> list | None:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                return None
            return parsed if isinstance(parsed, list) else None
        return [p.strip() for p in text.split(",") if p.strip()]
    return None


# built-in checks: each returns an error message or None


def _check_text(value: Any) -> str | None:
    if isinstance(value, (dict, list)):
        return "Expected text"
    return None


def _check_email(value: Any) -> str | None:
    return None if type_handlers.EMAIL_PATTERN.match(str(value)) else "Invalid email format"


def _check_url(value: Any) -> str | None:
    text = str(value).strip()
    parsed = urlparse(text)
    if parsed.scheme and (parsed.netloc or parsed.scheme in ("mailto", "tel")) and " " not in text:
        return None
    return "Invalid URL format"


def _check_phone(value: Any) -> str | None:
    text = re.sub(r"\s*[xX]\.?\s*\d+$", "", str(value).strip())
    return None if _PHONE_RE.match(text) else "Invalid phone number format"


def _check_country(value: Any) -> str | None:
    return None if isinstance(value, str) and _COUNTRY_RE.match(value.strip()) else "Must be 2-3 letter country code"


def _check_number(value: Any) -> str | None:
    return None if _to_number(value) is not None else "Must be a number"


def _check_integer(value: Any) -> str | None:
    number = _to_number(value)
    if number is None:
        return "Must be a number"
    return None if number.is_integer() else "Must be an integer"


def _check_float(value: Any) -> str | None:
    return None if _to_number(value) is not None else "Must be a decimal number"


def _check_currency(value: Any) -> str | None:
    if _to_number(value) is None:
        return "Must be a number"
    try:
        exponent = Decimal(str(value).strip()).normalize().as_tuple().exponent
    except InvalidOperation:
        return "Must be a number"
    if isinstance(exponent, int) and exponent < -2:
        return "Currency must have at most 2 decimal places"
    return None


def _check_percentage(value: Any) -> str | None:
    number = _to_number(value)
    if number is None:
        return "Must be a number"
    return None if 0 <= number <= 100 else "Percentage must be between 0 and 100"


def _check_date(value: Any) -> str | None:
    return None if parse_date(value) else "Invalid date format (use YYYY-MM-DD)"


def _check_time(value: Any) -> str | None:
    return None if isinstance(value, str) and _TIME_RE.match(value.strip()) else "Invalid time format (use HH:MM or HH:MM:SS)"


def _check_datetime(value: Any) -> str | None:
    return None if parse_datetime(value) else "Invalid datetime format"


def _check_boolean(value: Any) -> str | None:
    return None if parse_bool(value) is not None else "Must be true/false, yes/no, or 1/0"


def _check_rating(value: Any) -> str | None:
    number = _to_number(value)
    if number is None:
        return "Must be a number"
    if number.is_integer() and 1 <= number <= 5:
        return None
    if 0 <= number <= 1:
        return None
    return "Rating must be between 1 and 5"


def _check_color(value: Any) -> str | None:
    return None if isinstance(value, str) and _COLOR_RE.match(value.strip()) else "Invalid color format (use #RGB, #RRGGBB, or #RRGGBBAA)"


def _check_multiselect(value: Any) -> str | None:
    return None if parse_multi(value) is not None else "Must be a list of values"


_CHECKS = {
    "text": _check_text,
    "textarea": _check_text,
    "select": _check_text,
    "email": _check_email,
    "url": _check_url,
    "phone": _check_phone,
    "country": _check_country,
    "number": _check_number,
    "integer": _check_integer,
    "float": _check_float,
    "currency": _check_currency,
    "percentage": _check_percentage,
    "date": _check_date,
    "time": _check_time,
    "datetime": _check_datetime,
    "boolean": _check_boolean,
    "rating": _check_rating,
    "color": _check_color,
    "multiselect": _check_multiselect,
}


def get_suggestion(value: Any, column_type: str) -> str | None:
    kind = base_type(column_type)
    text = str(value)
    if kind == "email":
        if "@" not in text:
            return "Add @ symbol and domain (e.g., user@example.com)"
        return None
    if kind == "phone":
        return "Use format: +1234567890 or (123) 456-7890"
    if kind == "url":
        if not text.startswith("http"):
            return f"Try adding https:// prefix: https://{text}"
        return None
    if kind == "date":
        return "Use format: YYYY-MM-DD (e.g., 2024-01-15)"
    if kind == "time":
        return "Use format: HH:MM or HH:MM:SS (e.g., 14:30)"
    if kind == "color":
        return "Use hex format: #RGB or #RRGGBB (e.g., #ff0000)"
    if kind == "country":
        return "Use 2-letter ISO code (e.g., US, GB, DE)"
    if kind in ("number", "integer", "float", "currency"):
        if _to_number(value) is None:
            return "Remove non-numeric characters"
    return None


def _result(value: Any, column_name: str, column_type: str, error: str | None = None, suggestion: str | None = None) -> dict:
    result = {
        "is_valid": error is None,
        "value": value,
        "column_name": column_name,
        "column_type": column_type,
    }
    if error is not None:
        result["error"] = error
        if suggestion:
            result["suggestion"] = suggestion
    return result


def _validate_module_value(value: Any, definition: dict, options: dict | None) -> str | None:
    rule = definition.get("validation")
    if definition.get("multiValue"):
        items = parse_multi(value)
        if items is None:
            return "Must be a list of values"
        for item in items:
            outcome = type_handlers.validate(item, rule, options)
            if not outcome["valid"]:
                return outcome.get("error") or "Invalid value"
        return None
    outcome = type_handlers.validate(value, rule, options)
    return None if outcome["valid"] else outcome.get("error") or "Invalid value"


def validate_value(
    value: Any,
    column_name: str,
    column_type: str,
    module_types: Mapping[str, dict] | None = None,
    options: dict | None = None,
) -> dict:
    if is_empty(value):
        return _result(value, column_name, column_type)
    definition = (module_types or {}).get(column_type) if is_module_type(column_type) else None
    if definition is not None:
        error = _validate_module_value(value, definition, options)
        return _result(value, column_name, column_type, error, get_suggestion(value, column_type) if error else None)
    check = _CHECKS.get(base_type(column_type))
    if check is None:
        return _result(value, column_name, column_type)
    error = check(value)
    if error is None:
        return _result(value, column_name, column_type)
    return _result(value, column_name, column_type, error, get_suggestion(value, column_type))


def can_coerce_value(value: Any, target_type: str, module_types: Mapping[str, dict] | None = None) -> bool:
    return validate_value(value, "", target_type, module_types)["is_valid"]


def coerce_value(value: Any, column_type: str, module_types: Mapping[str, dict] | None = None) -> Any:
    """Convert an incoming value to its storage representation.

    Values that fail to convert are returned unchanged; validation reports them.
    """
    if is_empty(value):
        return value
    kind = base_type(column_type)
    definition = (module_types or {}).get(column_type) if is_module_type(column_type) else None
    if definition is not None:
        if definition.get("multiValue"):
            items = parse_multi(value)
            return items if items is not None else value
        stored_as = definition.get("baseType")
        if stored_as == "number":
            kind = "float"
        elif stored_as == "boolean":
            kind = "boolean"
        elif stored_as == "json":
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except ValueError:
                    return value
            return value
        else:
            return value if isinstance(value, str) else str(value)

    if kind == "boolean":
        parsed = parse_bool(value)
        return value if parsed is None else parsed
    if kind in NUMERIC_TYPES:
        number = _to_number(value)
        if number is None:
            return value
        if kind == "integer" or number.is_integer():
            return int(number)
        return number
    if kind == "multiselect":
        items = parse_multi(value)
        return items if items is not None else value
    if kind == "country" and isinstance(value, str):
        return value.strip().upper()
    if kind in ("text", "textarea", "select", "email", "url", "phone") and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def validate_row(
    row: dict,
    row_id: Any,
    columns: Iterable[dict],
    module_types: Mapping[str, dict] | None = None,
) -> dict:
    warnings = []
    for column in columns:
        name = column.get("name")
        value = row.get(name)
        if column.get("is_required") and is_empty(value):
            warnings.append(_result(value, name, column.get("type"), "Required field is empty"))
            continue
        result = validate_value(value, name, column.get("type"), module_types, column.get("options"))
        if not result["is_valid"]:
            warnings.append(result)
    return {"row_id": row_id, "is_valid": not warnings, "invalid_count": len(warnings), "warnings": warnings}


def validate_dataset(
    rows: Iterable[dict],
    columns: list[dict],
    module_types: Mapping[str, dict] | None = None,
) -> dict:
    """Validate ``rows`` (each ``{"id", "data"}``) and summarise per column."""
    stats = {c.get("name"): {"invalid": 0, "valid": 0, "errors": []} for c in columns}
    row_results = []
    for row in rows:
        result = validate_row(row.get("data") or {}, row.get("id"), columns, module_types)
        row_results.append(result)
        by_column = {w["column_name"]: w for w in result["warnings"]}
        for column in columns:
            entry = stats[column.get("name")]
            warning = by_column.get(column.get("name"))
            if warning:
                entry["invalid"] += 1
                if len(entry["errors"]) < 3 and warning.get("error"):
                    entry["errors"].append(f"{warning.get('value')}: {warning['error']}")
            else:
                entry["valid"] += 1
    summary = [
        {
            "column_name": c.get("name"),
            "column_type": c.get("type"),
            "invalid_count": stats[c.get("name")]["invalid"],
            "valid_count": stats[c.get("name")]["valid"],
            "sample_errors": stats[c.get("name")]["errors"],
        }
        for c in columns
    ]
    valid_rows = sum(1 for r in row_results if r["is_valid"])
    return {
        "total_rows": len(row_results),
        "valid_rows": valid_rows,
        "invalid_rows": len(row_results) - valid_rows,
        "total_warnings": sum(r["invalid_count"] for r in row_results),
        "rows": row_results,
        "summary": summary,
    }


def preview_type_change(
    rows: Iterable[dict],
    column_name: str,
    current_type: str,
    new_type: str,
    module_types: Mapping[str, dict] | None = None,
) -> dict:
    rows = list(rows)
    sample_issues = []
    incompatible = 0
    for row in rows:
        value = (row.get("data") or {}).get(column_name)
        if is_empty(value):
            continue
        result = validate_value(value, column_name, new_type, module_types)
        if result["is_valid"]:
            continue
        incompatible += 1
        if len(sample_issues) < 10:
            sample_issues.append(
                {
                    "row_id": row.get("id"),
                    "current_value": value,
                    "issue": result.get("error") or "Incompatible with new type",
                }
            )
    return {
        "column_name": column_name,
        "current_type": current_type,
        "new_type": new_type,
        "total_rows": len(rows),
        "compatible_rows": len(rows) - incompatible,
        "incompatible_rows": incompatible,
        "sample_issues": sample_issues,
    }


def format_module_value(value: Any, column_type: str, module_types: Mapping[str, dict] | None = None, options: dict | None = None) -> str | None:
    definition = (module_types or {}).get(column_type)
    if definition is None:
        return None
    return type_handlers.format_value(value, definition.get("format"), options)


def list_column_types(module_types: Mapping[str, dict] | None = None) -> list[dict]:
    types = [dict(t, source="built-in") for t in BUILT_IN_COLUMN_TYPES]
    for type_key in sorted((module_types or {}).keys()):
        definition = module_types[type_key]
        module_id = type_key.rsplit(":", 1)[0]
        types.append(
            {
                "type": type_key,
                "description": definition.get("description") or definition.get("displayName") or type_key,
                "display_name": definition.get("displayName"),
                "category": definition.get("category") or "module",
                "base_type": definition.get("baseType") or "string",
                "multi_value": bool(definition.get("multiValue")),
                "options": definition.get("options") or [],
                "source": "module",
                "module_id": module_id,
            }
        )
    return types


def is_known_type(column_type: str, module_types: Mapping[str, dict] | None = None) -> bool:
    if column_type in BUILT_IN_TYPE_NAMES:
        return True
    return is_module_type(column_type) and column_type in (module_types or {})
