"""Validation and format handlers referenced by module column types.

Modules are JSON only; a column type names a handler (``{"handler": "phone"}``)
and these functions do the work.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime, timezone
from typing import Any

PHONE_PATTERNS = {
    "US": re.compile(r"^\+?1?[-.\s]?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}$"),
    "GB": re.compile(r"^\+?44?[-.\s]?0?[0-9]{2,5}[-.\s]?[0-9]{3,4}[-.\s]?[0-9]{3,4}$"),
    "DE": re.compile(r"^\+?49?[-.\s]?0?[0-9]{2,5}[-.\s]?[0-9]{3,8}$"),
    "FR": re.compile(r"^\+?33?[-.\s]?0?[0-9][-.\s]?[0-9]{2}[-.\s]?[0-9]{2}[-.\s]?[0-9]{2}[-.\s]?[0-9]{2}$"),
    "AU": re.compile(r"^\+?61?[-.\s]?0?[0-9][-.\s]?[0-9]{4}[-.\s]?[0-9]{4}$"),
    "JP": re.compile(r"^\+?81?[-.\s]?0?[0-9]{1,4}[-.\s]?[0-9]{1,4}[-.\s]?[0-9]{4}$"),
    "INTL": re.compile(r"^\+[1-9]\d{6,14}$"),
}
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)
_EXTENSION_RE = re.compile(r"\s*[xX]\.?\s*(\d+)$")
TRUE_STRINGS = ("true", "1", "yes", "on")
FALSE_STRINGS = ("false", "0", "no", "off", "")

VALIDATION_HANDLERS = (
    "required",
    "regex",
    "phone",
    "email",
    "url",
    "range",
    "length",
    "enum",
    "json-schema",
    "composite",
)
FORMAT_HANDLERS = (
    "none",
    "phone",
    "currency",
    "number",
    "date",
    "boolean",
    "json",
    "uppercase",
    "lowercase",
    "template",
)


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in TRUE_STRINGS:
            return True
        if lower in FALSE_STRINGS:
            return False
    return None


def _ok() -> dict:
    return {"valid": True}


def _fail(error: str) -> dict:
    return {"valid": False, "error": error}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fmt_num(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def validate(value: Any, rule: dict | None, options: dict | None = None) -> dict:
    """Run ``rule`` against ``value``; returns ``{"valid": bool, "error"?: str}``."""
    if not isinstance(rule, dict):
        return _ok()
    handler = rule.get("handler")
    if _is_empty(value):
        return _fail("This field is required") if handler == "required" else _ok()

    if handler == "required":
        if isinstance(value, (list, tuple)) and not value:
            return _fail("This field is required")
        return _ok()
    if handler == "regex":
        pattern = rule.get("pattern") or ""
        try:
            matched = re.search(pattern, str(value)) is not None
        except re.error:
            return _fail(f"Invalid validation pattern: {pattern}")
        return _ok() if matched else _fail(rule.get("message") or f"Value does not match pattern: {pattern}")
    if handler == "phone":
        country = (options or {}).get("country")
        return _validate_phone(value, country, bool(rule.get("allowExtension")))
    if handler == "email":
        return _ok() if EMAIL_PATTERN.match(str(value)) else _fail("Invalid email address")
    if handler == "url":
        return _ok() if URL_PATTERN.match(str(value)) else _fail("Invalid URL")
    if handler == "range":
        num = _number(value)
        if num is None:
            return _fail("Value must be a number")
        if rule.get("min") is not None and num < rule["min"]:
            return _fail(f"Value must be at least {_fmt_num(rule['min'])}")
        if rule.get("max") is not None and num > rule["max"]:
            return _fail(f"Value must be at most {_fmt_num(rule['max'])}")
        return _ok()
    if handler == "length":
        length = len(str(value))
        if rule.get("min") is not None and length < rule["min"]:
            return _fail(f"Must be at least {rule['min']} characters")
        if rule.get("max") is not None and length > rule["max"]:
            return _fail(f"Must be at most {rule['max']} characters")
        return _ok()
    if handler == "enum":
        values = [str(v) for v in rule.get("values") or []]
        if str(value) not in values:
            return _fail(f"Value must be one of: {', '.join(values)}")
        return _ok()
    if handler == "json-schema":
        if isinstance(value, str):
            try:
                json.loads(value)
            except ValueError:
                return _fail("Invalid JSON")
        return _ok()
    if handler == "composite":
        results = [validate(value, sub, options) for sub in rule.get("rules") or []]
        if rule.get("mode") == "any":
            if any(r["valid"] for r in results) or not results:
                return _ok()
            return _fail("Value does not match any validation rule")
        for result in results:
            if not result["valid"]:
                return result
        return _ok()
    return _ok()


def _validate_phone(value: Any, country: str | None, allow_extension: bool) -> dict:
    text = str(value)
    ext = _EXTENSION_RE.search(text)
    if ext:
        if not allow_extension:
            return _fail("Extension numbers are not allowed")
        text = text[: ext.start()]
    if country and country in PHONE_PATTERNS and PHONE_PATTERNS[country].match(text):
        return _ok()
    if PHONE_PATTERNS["INTL"].match(re.sub(r"[-.\s()]", "", text)):
        return _ok()
    for pattern in PHONE_PATTERNS.values():
        if pattern.match(text):
            return _ok()
    return _fail("Invalid phone number format")


# formatting


def _strip(digits: str, code: str) -> str:
    d = re.sub(r"\D", "", digits)
    if d.startswith(code):
        d = d[len(code):]
    if d.startswith("0"):
        d = d[1:]
    return d


def _format_us(raw: str) -> str:
    d = re.sub(r"\D", "", raw)[-10:]
    if len(d) != 10:
        return raw
    return f"+1 ({d[:3]}) {d[3:6]}-{d[6:]}"


def _format_gb(raw: str) -> str:
    d = _strip(raw, "44")
    return f"+44 {d[:4]} {d[4:]}"


def _format_de(raw: str) -> str:
    d = _strip(raw, "49")
    return f"+49 {d[:3]} {d[3:]}"


def _format_fr(raw: str) -> str:
    d = _strip(raw, "33")
    if len(d) < 9:
        return raw
    return f"+33 {d[0]} {d[1:3]} {d[3:5]} {d[5:7]} {d[7:]}"


def _format_au(raw: str) -> str:
    d = _strip(raw, "61")
    if len(d) < 9:
        return raw
    return f"+61 {d[0]} {d[1:5]} {d[5:]}"


def _format_jp(raw: str) -> str:
    d = _strip(raw, "81")
    return f"+81 {d[:3]}-{d[3:7]}-{d[7:]}"


PHONE_FORMATS = {
    "US": _format_us,
    "GB": _format_gb,
    "DE": _format_de,
    "FR": _format_fr,
    "AU": _format_au,
    "JP": _format_jp,
}

_COUNTRY_PREFIXES = (("44", "GB"), ("49", "DE"), ("33", "FR"), ("61", "AU"), ("81", "JP"))
_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥"}


def detect_phone_country(digits: str) -> str:
    if digits.startswith("1") and len(digits) in (10, 11):
        return "US"
    for prefix, country in _COUNTRY_PREFIXES:
        if digits.startswith(prefix):
            return country
    return "US"


def format_phone(value: Any, style: str | None = None, country: str | None = None) -> str:
    text = str(value)
    digits = re.sub(r"\D", "", text)
    if style == "e164":
        if digits.startswith("1") and len(digits) == 11:
            return f"+{digits}"
        if len(digits) == 10:
            return f"+1{digits}"
        return f"+{digits}"
    formatter = PHONE_FORMATS.get(country or detect_phone_country(digits), _format_us)
    return formatter(text)


def _group(num: float, decimals: int) -> str:
    return f"{num:,.{decimals}f}"


def format_currency(value: Any, currency: str | None = None, decimals: int | None = None) -> str:
    num = _number(value)
    if num is None:
        return str(value)
    dec = 2 if decimals is None else int(decimals)
    cur = (currency or "USD").upper()
    symbol = _CURRENCY_SYMBOLS.get(cur)
    sign = "-" if num < 0 else ""
    if symbol:
        return f"{sign}{symbol}{_group(abs(num), dec)}"
    return f"{cur} {num:.{dec}f}"


def format_number(value: Any, decimals: int | None = None, thousands_separator: bool | None = None) -> str:
    num = _number(value)
    if num is None:
        return str(value)
    if thousands_separator is not False:
        if decimals is not None:
            return _group(num, int(decimals))
        text = _group(num, 2).rstrip("0").rstrip(".")
        return text
    if decimals is not None:
        return f"{num:.{int(decimals)}f}"
    return _fmt_num(num)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


_DATE_TOKENS = re.compile(r"YYYY|YY|MM|M|DD|D|HH|H|mm|m|ss|s")


def format_date(value: Any, fmt: str | None = None) -> str:
    dt = _as_datetime(value)
    if dt is None:
        return str(value)
    parts = {
        "YYYY": f"{dt.year:04d}",
        "YY": f"{dt.year:04d}"[-2:],
        "MM": f"{dt.month:02d}",
        "M": str(dt.month),
        "DD": f"{dt.day:02d}",
        "D": str(dt.day),
        "HH": f"{dt.hour:02d}",
        "H": str(dt.hour),
        "mm": f"{dt.minute:02d}",
        "m": str(dt.minute),
        "ss": f"{dt.second:02d}",
        "s": str(dt.second),
    }
    return _DATE_TOKENS.sub(lambda m: parts[m.group(0)], fmt or "YYYY-MM-DD")


def format_template(value: Any, template: str) -> str:
    result = (template or "").replace("{value}", str(value))
    if isinstance(value, list):
        for idx, item in enumerate(value):
            result = result.replace(f"{{{idx}}}", str(item))
    elif isinstance(value, dict):
        for key, item in value.items():
            result = result.replace(f"{{{key}}}", str(item))
    return result


def format_value(value: Any, rule: dict | None, options: dict | None = None) -> str:
    if value is None:
        return ""
    handler = rule.get("handler") if isinstance(rule, dict) else "none"
    if handler == "phone":
        return format_phone(value, rule.get("style"), (options or {}).get("country"))
    if handler == "currency":
        return format_currency(value, rule.get("currency"), rule.get("decimals"))
    if handler == "number":
        return format_number(value, rule.get("decimals"), rule.get("thousandsSeparator"))
    if handler == "date":
        return format_date(value, rule.get("format"))
    if handler == "boolean":
        flag = parse_bool(value)
        if flag is None:
            return str(value)
        return (rule.get("trueLabel") or "Yes") if flag else (rule.get("falseLabel") or "No")
    if handler == "json":
        try:
            parsed = json.loads(value) if isinstance(value, str) else value
            return json.dumps(parsed, indent=2 if rule.get("pretty") else None)
        except (TypeError, ValueError):
            return str(value)
    if handler == "uppercase":
        return str(value).upper()
    if handler == "lowercase":
        return str(value).lower()
    if handler == "template":
        return format_template(value, rule.get("template") or "")
    return str(value)
