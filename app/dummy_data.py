"""Synthetic data for development: generation rules, phone numbers, dummy tables.

Everything random goes through one Faker instance so ``seed()`` makes runs
reproducible.
"""

from __future__ import annotations

import logging
import re
import string
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from faker import Faker

from app import column_types
from app.table_schema import get_default_columns

logger = logging.getLogger("tabula.dummy")

fake = Faker()


def seed(value: int) -> None:
    Faker.seed(value)


def _chance(probability: float) -> bool:
    return fake.random.random() < probability


def _pick(values: list) -> Any:
    return fake.random_element(elements=values)


# generation rules

GENERATION_HANDLERS = (
    "static",
    "faker",
    "random-int",
    "random-float",
    "random-boolean",
    "random-enum",
    "from-source",
    "sequence",
    "pattern",
    "template",
)

COMMON_FAKER_METHODS = (
    "person.firstName",
    "person.lastName",
    "person.fullName",
    "internet.email",
    "phone.number",
    "company.name",
    "location.city",
    "location.country",
    "location.streetAddress",
    "location.zipCode",
    "commerce.price",
    "commerce.productName",
    "date.past",
    "date.future",
    "lorem.sentence",
    "lorem.paragraph",
    "string.uuid",
    "string.alphanumeric",
)

_ALNUM = string.digits + string.ascii_uppercase + string.ascii_lowercase


def _commerce_price(min: float = 1, max: float = 1000, dec: int = 2) -> str:
    value = fake.random.uniform(min, max)
    return f"{value:.{dec}f}"


def _product_name() -> str:
    return " ".join(w.title() for w in fake.words(nb=2)) + " " + _pick(["Chair", "Lamp", "Shirt", "Table", "Gloves", "Keyboard", "Shoes"])


def _alphanumeric(length: int = 1) -> str:
    return "".join(fake.random.choice(_ALNUM) for _ in range(int(length)))


def _numeric(length: int = 1) -> str:
    return fake.numerify("#" * int(length))


def _number_int(min: int = 0, max: int = 9999) -> int:
    return fake.random_int(min=min, max=max)


def _number_float(min: float = 0, max: float = 1, fractionDigits: int | None = None) -> float:
    value = fake.random.uniform(min, max)
    return round(value, fractionDigits) if fractionDigits is not None else value


FAKER_METHODS = {
    "person.firstName": fake.first_name,
    "person.lastName": fake.last_name,
    "person.fullName": fake.name,
    "person.jobTitle": fake.job,
    "internet.email": fake.email,
    "internet.url": fake.url,
    "internet.userName": fake.user_name,
    "phone.number": fake.phone_number,
    "company.name": fake.company,
    "company.catchPhrase": fake.catch_phrase,
    "location.city": fake.city,
    "location.country": fake.country,
    "location.countryCode": fake.country_code,
    "location.streetAddress": fake.street_address,
    "location.zipCode": fake.postcode,
    "commerce.price": _commerce_price,
    "commerce.productName": _product_name,
    "date.past": fake.past_date,
    "date.future": fake.future_date,
    "date.recent": fake.date_time_this_month,
    "lorem.word": fake.word,
    "lorem.sentence": fake.sentence,
    "lorem.paragraph": fake.paragraph,
    "string.uuid": fake.uuid4,
    "string.alphanumeric": _alphanumeric,
    "string.numeric": _numeric,
    "datatype.boolean": fake.pybool,
    "number.int": _number_int,
    "number.float": _number_float,
    "color.rgb": fake.hex_color,
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _to_json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _call_args(args: Any) -> tuple[list, dict]:
    if args is None:
        return [], {}
    if isinstance(args, dict):
        return [], dict(args)
    if isinstance(args, list) and len(args) == 1 and isinstance(args[0], dict):
        return [], dict(args[0])
    if isinstance(args, list):
        return list(args), {}
    return [args], {}


def generate_faker(method: str, args: Any = None) -> Any:
    """Call a faker method addressed as ``category.method``; None when unknown."""
    parts = (method or "").split(".")
    if len(parts) != 2 or not all(parts):
        logger.warning("faker_invalid_method method=%s", method)
        return None
    func = FAKER_METHODS.get(method)
    if func is None:
        func = getattr(fake, _CAMEL_RE.sub("_", parts[1]).lower(), None)
    if not callable(func):
        logger.warning("faker_unknown_method method=%s", method)
        return None
    positional, keyword = _call_args(args)
    try:
        return _to_json_value(func(*positional, **keyword))
    except (TypeError, ValueError, AttributeError) as exc:
        logger.warning("faker_call_failed method=%s error=%s", method, exc)
        return None


def generate_pattern(pattern: str) -> str:
    """``#`` digit, ``A`` upper, ``a`` lower, ``*`` alphanumeric, ``{...}`` literal."""
    out = []
    literal = None
    for char in pattern or "":
        if char == "{":
            literal = []
            continue
        if char == "}" and literal is not None:
            out.append("".join(literal))
            literal = None
            continue
        if literal is not None:
            literal.append(char)
        elif char == "#":
            out.append(str(fake.random.randint(0, 9)))
        elif char == "A":
            out.append(fake.random.choice(string.ascii_uppercase))
        elif char == "a":
            out.append(fake.random.choice(string.ascii_lowercase))
        elif char == "*":
            out.append(fake.random.choice(_ALNUM))
        else:
            out.append(char)
    return "".join(out)


def generate(rule: dict | None, context: dict | None = None) -> Any:
    """Produce one value for ``rule``.

    ``context`` carries ``index``, ``total``, the partially built ``row`` and,
    for ``from-source``, the ``source`` values of the column type.
    """
    if not isinstance(rule, dict):
        return None
    context = context or {"index": 0, "total": 1, "row": {}}
    handler = rule.get("handler")
    if handler == "static":
        return rule.get("value")
    if handler == "faker":
        return generate_faker(rule.get("method"), rule.get("args"))
    if handler == "random-int":
        return fake.random.randint(int(rule.get("min", 0)), int(rule.get("max", 100)))
    if handler == "random-float":
        value = fake.random.uniform(float(rule.get("min", 0)), float(rule.get("max", 1)))
        if rule.get("decimals") is not None:
            return round(value, int(rule["decimals"]))
        return value
    if handler == "random-boolean":
        probability = rule.get("probability")
        return _chance(0.5 if probability is None else float(probability))
    if handler == "random-enum":
        values = rule.get("values") or []
        return _pick(values) if values else None
    if handler == "from-source":
        values = context.get("source") or []
        return _pick(values) if values else None
    if handler == "sequence":
        start = rule.get("start")
        step = rule.get("step")
        return (1 if start is None else start) + context.get("index", 0) * (1 if step is None else step)
    if handler == "pattern":
        return generate_pattern(rule.get("pattern") or "")
    if handler == "template":
        result = rule.get("template") or ""
        for key, sub_rule in (rule.get("data") or {}).items():
            result = result.replace(f"{{{key}}}", str(generate(sub_rule, context)))
        return result
    return None


def _condition_met(row: dict, condition: dict | None) -> bool:
    if not isinstance(condition, dict):
        return False
    if condition.get("any") and any(bool(row.get(name)) for name in condition["any"]):
        return True
    if condition.get("all") and all(bool(row.get(name)) for name in condition["all"]):
        return True
    return False


def apply_constraints(row: dict, columns: Iterable[dict], context: dict | None = None) -> dict:
    """Resolve inter-column constraints on a generated row, in column order.

    ``excludes`` clears the listed columns when this one is truthy, ``implies``
    sets them true, ``nullIf`` empties this column when its condition holds and
    ``requiredIf`` regenerates an empty value when its condition holds.
    """
    columns = list(columns)
    for column in columns:
        constraints = column.get("constraints") or {}
        name = column.get("name")
        if row.get(name):
            for other in constraints.get("excludes") or []:
                row[other] = False if isinstance(row.get(other), bool) else None
            for other in constraints.get("implies") or []:
                row[other] = True
    for column in columns:
        constraints = column.get("constraints") or {}
        name = column.get("name")
        if _condition_met(row, constraints.get("nullIf")):
            row[name] = None
            continue
        if _condition_met(row, constraints.get("requiredIf")) and column_types.is_empty(row.get(name)):
            value = generate(column.get("generate"), dict(context or {}, row=row))
            if column_types.is_empty(value):
                value = True if column.get("type") == "boolean" else column.get("default")
            row[name] = value
    return row


def generate_row(columns: Iterable[dict], context: dict | None = None, sources: dict | None = None) -> dict:
    columns = list(columns)
    context = dict(context or {"index": 0, "total": 1})
    row: dict = {}
    for column in columns:
        if column.get("generate"):
            col_context = dict(context, row=row, source=(sources or {}).get(column.get("name")))
            row[column["name"]] = generate(column["generate"], col_context)
        else:
            row[column["name"]] = column.get("default")
    return apply_constraints(row, columns, context)


def generate_rows(columns: Iterable[dict], count: int, sources: dict | None = None) -> list[dict]:
    columns = list(columns)
    return [generate_row(columns, {"index": i, "total": count}, sources) for i in range(count)]


# faker values per column type


def faker_value(column_type: str) -> Any:
    kind = column_types.base_type(column_type)
    if kind == "text":
        return _pick([_product_name(), fake.company(), fake.word(), fake.catch_phrase()])
    if kind == "textarea":
        return fake.paragraph()
    if kind == "email":
        return fake.email()
    if kind == "url":
        return fake.url()
    if kind == "phone":
        return generate_phone_numbers(1)[0]
    if kind == "country":
        return fake.country_code()
    if kind in ("integer", "number"):
        return fake.random_int(min=1, max=1000)
    if kind == "float":
        return _number_float(0.1, 100, 2)
    if kind == "currency":
        return _number_float(0.99, 999.99, 2)
    if kind == "percentage":
        return fake.random_int(min=0, max=100)
    if kind == "date":
        return fake.past_date().isoformat()
    if kind == "time":
        return fake.time(pattern="%H:%M")
    if kind == "datetime":
        return fake.past_datetime().strftime("%Y-%m-%dT%H:%M:%SZ")
    if kind == "boolean":
        return fake.pybool()
    if kind == "rating":
        return fake.random_int(min=1, max=5)
    if kind == "color":
        return fake.hex_color()
    return fake.word()


# phone numbers

COUNTRY_PATTERNS = {
    "US": {
        "code": "+1",
        "area_code_ranges": [(201, 989)],
        "subscriber_length": 7,
        "format": lambda area, sub: f"+1 ({area}) {sub[:3]}-{sub[3:]}",
    },
    "GB": {
        "code": "+44",
        "area_code_ranges": [(20, 29), (113, 119), (121, 129), (131, 139), (141, 149), (151, 159), (161, 169)],
        "subscriber_length": 8,
        "format": lambda area, sub: f"+44 {area} {sub[:4]} {sub[4:]}",
    },
    "DE": {
        "code": "+49",
        "area_code_ranges": [(30, 39), (40, 49), (69, 69), (89, 89), (221, 229), (211, 219)],
        "subscriber_length": 7,
        "format": lambda area, sub: f"+49 {area} {sub}",
    },
    "FR": {
        "code": "+33",
        "area_code_ranges": [(1, 5)],
        "subscriber_length": 8,
        "format": lambda area, sub: f"+33 {area} {sub[:2]} {sub[2:4]} {sub[4:6]} {sub[6:]}",
    },
    "AU": {
        "code": "+61",
        "area_code_ranges": [(2, 2), (3, 3), (7, 7), (8, 8)],
        "subscriber_length": 8,
        "format": lambda area, sub: f"+61 {area} {sub[:4]} {sub[4:]}",
    },
    "JP": {
        "code": "+81",
        "area_code_ranges": [(3, 3), (6, 6), (45, 45), (52, 52), (75, 75), (78, 78), (92, 92)],
        "subscriber_length": 8,
        "format": lambda area, sub: f"+81 {area}-{sub[:4]}-{sub[4:]}",
    },
}

US_CARRIER_PREFIXES = {
    "AT&T": ["210", "214", "281", "310", "312", "404", "415", "469", "512", "650"],
    "Verizon": ["201", "212", "215", "301", "347", "516", "617", "703", "732", "908"],
    "T-Mobile": ["206", "213", "253", "303", "425", "503", "602", "702", "720", "818"],
}

PHONE_FORMATS = ("international", "e164", "digits")
DID_COUNTRIES = ("US", "GB", "DE")


def _area_code(pattern: dict) -> str:
    low, high = _pick(pattern["area_code_ranges"])
    return str(fake.random.randint(low, high))


def _subscriber(length: int) -> str:
    # leading 0/1 would read as a trunk or country prefix
    return str(fake.random.randint(2, 9)) + "".join(str(fake.random.randint(0, 9)) for _ in range(length - 1))


def generate_phone_numbers(count: int, country: str = "US", fmt: str = "international") -> list[str]:
    pattern = COUNTRY_PATTERNS.get(country) or COUNTRY_PATTERNS["US"]
    numbers = []
    for _ in range(count):
        area = _area_code(pattern)
        sub = _subscriber(pattern["subscriber_length"])
        if fmt == "e164":
            numbers.append(f"{pattern['code']}{area}{sub}".replace(" ", ""))
        elif fmt == "digits":
            numbers.append(f"{area}{sub}")
        else:
            numbers.append(pattern["format"](area, sub))
    return numbers


def generate_did_numbers(
    count: int,
    country: str = "US",
    carrier: str = "any",
    include_extension: bool = False,
    sequential: bool = False,
) -> list[str]:
    """DID numbers; ``sequential`` builds a block after the first random number."""
    pattern = COUNTRY_PATTERNS.get(country) or COUNTRY_PATTERNS["US"]
    length = pattern["subscriber_length"]
    numbers = []
    base_area = None
    current = 0
    for _ in range(count):
        if sequential and base_area is not None:
            current += 1
            area = base_area
            sub = str(current).zfill(length)
        else:
            if country == "US" and carrier in US_CARRIER_PREFIXES:
                area = _pick(US_CARRIER_PREFIXES[carrier])
            else:
                area = _area_code(pattern)
            sub = _subscriber(length)
            if sequential:
                base_area = area
                # the whole block has to fit the subscriber width
                current = min(int(sub), 10 ** length - count)
                sub = str(current).zfill(length)
        number = pattern["format"](area, sub)
        if include_extension:
            number = f"{number} x{fake.random.randint(100, 9999)}"
        numbers.append(number)
    return numbers


_COUNTRY_OPTIONS = [
    {"value": "US", "label": "United States (+1)"},
    {"value": "GB", "label": "United Kingdom (+44)"},
    {"value": "DE", "label": "Germany (+49)"},
    {"value": "FR", "label": "France (+33)"},
    {"value": "AU", "label": "Australia (+61)"},
    {"value": "JP", "label": "Japan (+81)"},
]

DATA_GENERATORS = [
    {
        "id": "phone-number",
        "displayName": "Phone Number",
        "description": "Generate realistic phone numbers with country-specific formatting",
        "icon": "phone",
        "category": "Telecom",
        "outputType": "phone",
        "options": [
            {"id": "country", "type": "select", "displayName": "Country", "default": "US", "options": _COUNTRY_OPTIONS},
            {
                "id": "format",
                "type": "select",
                "displayName": "Format",
                "default": "international",
                "options": [
                    {"value": "international", "label": "International (+1 555-123-4567)"},
                    {"value": "e164", "label": "E.164 (+15551234567)"},
                    {"value": "digits", "label": "Digits only (5551234567)"},
                ],
            },
        ],
    },
    {
        "id": "did-number",
        "displayName": "DID Number",
        "description": "Generate Direct Inward Dialing numbers with carrier-specific patterns",
        "icon": "phone-forwarded",
        "category": "Telecom",
        "outputType": "did",
        "options": [
            {"id": "country", "type": "select", "displayName": "Country", "default": "US", "options": _COUNTRY_OPTIONS[:3]},
            {
                "id": "carrier",
                "type": "select",
                "displayName": "Carrier (US only)",
                "default": "any",
                "options": [{"value": "any", "label": "Any Carrier"}] + [{"value": c, "label": c} for c in US_CARRIER_PREFIXES],
            },
            {"id": "includeExtension", "type": "boolean", "displayName": "Include Extension", "default": False},
            {"id": "sequential", "type": "boolean", "displayName": "Sequential", "default": False},
        ],
    },
]


def run_generator(generator_id: str, count: int, options: dict | None = None) -> list[str]:
    options = options or {}
    if generator_id == "phone-number":
        return generate_phone_numbers(count, options.get("country") or "US", options.get("format") or "international")
    if generator_id == "did-number":
        country = options.get("country") or "US"
        return generate_did_numbers(
            count,
            country if country in DID_COUNTRIES else "US",
            # carrier ranges only exist for US numbers
            (options.get("carrier") or "any") if country == "US" else "any",
            bool(options.get("includeExtension")),
            bool(options.get("sequential")),
        )
    raise KeyError(generator_id)


def list_generators() -> dict:
    return {
        "generators": [dict(g) for g in DATA_GENERATORS],
        "handlers": list(GENERATION_HANDLERS),
        "faker_methods": list(COMMON_FAKER_METHODS),
    }


BUILT_IN_TABLE_GENERATORS = [
    {
        "id": "test-tables",
        "displayName": "Test Tables",
        "description": "Generate random test tables with various column types and data",
        "icon": "wand",
        "category": "testing",
        "tableType": "default",
        "defaultTableCount": 100,
        "defaultRowCount": 200,
        "color": "warning",
    },
    {
        "id": "sale-tables",
        "displayName": "For Sale Tables",
        "description": "Generate tables configured for selling items with price and quantity columns",
        "icon": "shopping-cart",
        "category": "commerce",
        "tableType": "sale",
        "defaultTableCount": 20,
        "defaultRowCount": 50,
        "color": "success",
    },
    {
        "id": "rental-tables",
        "displayName": "Rental Tables",
        "description": "Generate generic rental tables with pricing, availability, and usage tracking",
        "icon": "clock-dollar",
        "category": "commerce",
        "tableType": "rent",
        "defaultTableCount": 20,
        "defaultRowCount": 50,
        "color": "info",
    },
]


def list_table_generators(module_generators: Iterable[dict] = (), module_names: dict | None = None) -> list[dict]:
    items = [dict(g, moduleId=None, moduleName=None, customGenerator=False) for g in BUILT_IN_TABLE_GENERATORS]
    for generator in module_generators:
        module_id = generator.get("module_id")
        items.append(
            {
                "id": generator.get("id"),
                "displayName": generator.get("displayName") or generator.get("id"),
                "description": generator.get("description") or "",
                "icon": generator.get("icon"),
                "category": generator.get("category"),
                "tableType": generator.get("tableType") or "default",
                "defaultTableCount": generator.get("defaultTableCount") or 10,
                "defaultRowCount": generator.get("defaultRowCount") or 50,
                "color": generator.get("color"),
                "moduleId": module_id,
                "moduleName": (module_names or {}).get(module_id),
                "customGenerator": True,
            }
        )
    return items


# dummy tables

COLUMN_TYPES = ("text", "textarea", "email", "url", "country", "number", "date", "boolean")

COLUMN_NAME_TEMPLATES = {
    "text": ["title", "name", "status", "category", "type", "label", "tag"],
    "textarea": ["description", "notes", "summary", "content", "bio"],
    "email": ["email", "contactEmail", "supportEmail"],
    "url": ["website", "homepage", "link", "profileUrl"],
    "country": ["country", "location", "origin", "destination"],
    "number": ["value", "score", "points"],
    "date": ["createdDate", "publishedDate", "startDate", "endDate", "dueDate"],
    "boolean": ["isActive", "isPublished", "isFeatured", "isVerified", "enabled"],
}

TABLE_NAMES = [
    "Products", "Customers", "Orders", "Inventory", "Employees",
    "Projects", "Tasks", "Events", "Contacts", "Assets",
    "Campaigns", "Reports", "Analytics", "Feedback", "Leads",
]
RENT_TABLE_NAMES = ["Equipment", "Vehicles", "Tools", "Machinery", "Spaces", "Rooms"]
PHONE_TABLE_NAMES = [
    "Phone Numbers", "Virtual Numbers", "DID Numbers", "VoIP Numbers",
    "Business Phone", "Mobile Numbers", "Toll-Free Numbers", "Local Numbers",
]
PHONE_RENT_TABLE_NAMES = ["Rental Numbers", "Temporary Numbers", "Short-Term Numbers"]
PHONE_PROVIDERS = [
    "Twilio", "Vonage", "Bandwidth", "Plivo", "Telnyx", "Sinch",
    "MessageBird", "Infobip", "Clickatell", "Nexmo", "RingCentral",
    "Grasshopper", "Google Voice", "Skype", "Zoom Phone",
]
VISIBILITY_CHOICES = ["private", "public", "shared"]


def _default_string(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _unique_name(base: str, existing: set[str]) -> str:
    name = base
    counter = 1
    while name in existing:
        name = f"{base}{counter}"
        counter += 1
    existing.add(name)
    return name


def random_column(position: int, existing: set[str]) -> dict:
    kind = _pick(list(COLUMN_TYPES))
    default = faker_value(kind) if _chance(0.2) else None
    return {
        "name": _unique_name(_pick(COLUMN_NAME_TEMPLATES[kind]), existing),
        "type": kind,
        "is_required": _chance(0.3),
        "allow_duplicates": _chance(0.8),
        "default_value": _default_string(default),
        "position": position,
    }


def _type_columns(table_type: str, start: int, existing: set[str]) -> list[dict]:
    columns = []
    for offset, column in enumerate(get_default_columns(table_type)):
        existing.add(column["name"])
        columns.append(dict(column, allow_duplicates=True, position=start + offset))
    return columns


def _suffix() -> str:
    stamp = int(time.time() * 1000)
    digits = string.digits + string.ascii_lowercase
    out = ""
    while stamp:
        stamp, rem = divmod(stamp, 36)
        out = digits[rem] + out
    return out[-5:].upper()


def phone_table_columns(table_type: str) -> list[dict]:
    columns = _type_columns(table_type, 0, set())
    spec = [
        ("number", "text", True, False, None),
        ("country", "country", True, True, None),
        ("area", "text", False, True, None),
        ("voice", "boolean", True, True, "true"),
        ("sms", "boolean", True, True, "false"),
        ("reg", "boolean", False, True, None),
        ("tollfree", "boolean", False, True, None),
        ("incomingPerMinute", "number", False, True, None),
        ("incomingRateSms", "number", False, True, None),
        ("docs", "url", False, True, None),
        ("description", "textarea", False, True, None),
        ("providerName", "text", True, True, None),
    ]
    position = len(columns)
    for name, kind, required, duplicates, default in spec:
        columns.append(
            {
                "name": name,
                "type": kind,
                "is_required": required,
                "allow_duplicates": duplicates,
                "default_value": default,
                "position": position,
            }
        )
        position += 1
    return columns


def phone_row(table_type: str) -> dict:
    """One phone-number listing; feature columns depend on each other."""
    row: dict = {"price": _number_float(0.5, 50, 2)}
    if table_type == "sale":
        row["qty"] = fake.random_int(min=1, max=1000)
    elif table_type == "rent":
        row["fee"] = _number_float(5, 50, 2)
        row["used"] = False
        row["available"] = True
    country = _pick(list(COUNTRY_PATTERNS))
    row["number"] = generate_phone_numbers(1, country, "e164")[0]
    row["country"] = country
    row["area"] = fake.city()

    voice = _chance(0.7)
    sms = _chance(0.5)
    row["voice"] = voice
    row["sms"] = sms
    reg = False
    if sms:
        reg = _chance(0.6)
        row["reg"] = reg
    tollfree = False
    if not voice and not sms and not reg:
        tollfree = True
        row["tollfree"] = True
    if voice or tollfree:
        row["incomingPerMinute"] = _number_float(0.01, 0.10, 2)
    if sms:
        row["incomingRateSms"] = _number_float(0.01, 0.05, 2)
    if _chance(0.7):
        row["docs"] = fake.url()
    if _chance(0.6):
        features = [label for flag, label in ((voice, "voice calls"), (sms, "SMS"), (tollfree, "toll-free")) if flag]
        row["description"] = f"Phone number for {row['area']}, {country}. Supports {', '.join(features) or 'basic features'}."
    row["providerName"] = _pick(PHONE_PROVIDERS)
    return row


def _pick_table_type(forced: str | None) -> str:
    if forced:
        return forced
    roll = fake.random.random()
    if roll < 0.2:
        return "sale"
    if roll < 0.3:
        return "rent"
    return "default"


def dummy_table(index: int, table_type: str | None = None) -> dict:
    """Schema for one generated table; ``phone`` marks phone listing tables."""
    table_type = _pick_table_type(table_type)
    if table_type in ("sale", "rent") and _chance(0.5):
        names = PHONE_TABLE_NAMES + (PHONE_RENT_TABLE_NAMES if table_type == "rent" else [])
        label = _pick(names)
        purpose = "rental" if table_type == "rent" else "inventory"
        return {
            "name": f"{label} #{index}-{_suffix()}",
            "description": f"{label} {purpose} with voice, SMS, and pricing information",
            "visibility": _pick(VISIBILITY_CHOICES),
            "table_type": table_type,
            "columns": phone_table_columns(table_type),
            "phone": True,
        }
    existing: set[str] = set()
    columns = _type_columns(table_type, 0, existing) if table_type != "default" else []
    offset = len(columns)
    for i in range(fake.random_int(min=3, max=8)):
        columns.append(random_column(offset + i, existing))
    names = TABLE_NAMES + (RENT_TABLE_NAMES if table_type == "rent" else [])
    return {
        "name": f"{_pick(names)} #{index}-{_suffix()}",
        "description": fake.catch_phrase(),
        "visibility": _pick(VISIBILITY_CHOICES),
        "table_type": table_type,
        "columns": columns,
        "phone": False,
    }


def _typed_value(table_type: str, name: str) -> tuple[bool, Any]:
    if table_type == "sale":
        if name == "price":
            return True, _number_float(0.99, 999.99, 2)
        if name == "qty":
            return True, fake.random_int(min=1, max=100)
    if table_type == "rent":
        if name == "price":
            return True, _number_float(5, 500, 2)
        if name == "fee":
            return True, _number_float(5, 50, 2)
        # fresh inventory
        if name == "used":
            return True, False
        if name == "available":
            return True, True
    return False, None


def data_row(columns: Iterable[dict], table_type: str = "default") -> dict:
    row: dict = {}
    for column in columns:
        name = column["name"]
        if not column.get("is_required") and _chance(0.2):
            continue
        handled, value = _typed_value(table_type, name)
        if handled:
            row[name] = value
            continue
        if column.get("default_value") and _chance(0.5):
            row[name] = column["default_value"]
            continue
        row[name] = faker_value(column.get("type") or "text")
    return row


def clean_row(row: dict, columns: list[dict], module_types: dict | None = None) -> tuple[dict, int]:
    """Coerce generated values to their column types and drop the ones that fail."""
    cleaned = {}
    dropped = 0
    by_name = {c["name"]: c for c in columns}
    for name, value in row.items():
        column = by_name.get(name)
        if column is None or value is None:
            continue
        value = column_types.coerce_value(value, column.get("type") or "text", module_types)
        if not column_types.validate_value(value, name, column.get("type") or "text", module_types)["is_valid"]:
            dropped += 1
            continue
        cleaned[name] = value
    return cleaned, dropped


_MANIFEST_TYPES = {"string": "text", "number": "number", "boolean": "boolean", "json": "text"}


def module_generator_table(generator: dict, module_id: str, module_type_ids: set[str], index: int) -> dict:
    """Schema for one table built from a module's table generator definition."""
    columns = []
    for position, column in enumerate(generator.get("columns") or []):
        kind = column.get("type") or "string"
        if kind in module_type_ids:
            kind = f"{module_id}:{kind}"
        else:
            kind = _MANIFEST_TYPES.get(kind, kind)
        default = column.get("default")
        columns.append(
            {
                "name": column["name"],
                "type": kind,
                "is_required": bool(column.get("required")),
                "allow_duplicates": True,
                "default_value": _default_string(default),
                "position": position,
                "generate": column.get("generate"),
                "constraints": column.get("constraints"),
                "default": default,
            }
        )
    table_type = generator.get("tableType") or "default"
    existing = {c["name"] for c in columns}
    for column in get_default_columns(table_type):
        if column["name"] not in existing:
            columns.append(dict(column, allow_duplicates=True, position=len(columns)))
    label = generator.get("displayName") or generator.get("id")
    return {
        "name": f"{label} #{index}-{_suffix()}",
        "description": generator.get("description"),
        "visibility": _pick(VISIBILITY_CHOICES),
        "table_type": table_type,
        "columns": columns,
        "phone": False,
        "module_generator": True,
    }


def _source_values(columns: list[dict], module_types: dict) -> dict:
    sources = {}
    for column in columns:
        definition = module_types.get(column.get("type") or "")
        source = (definition or {}).get("source") or {}
        if source.get("type") == "static":
            sources[column["name"]] = list(source.get("values") or [])
    return sources


def _typed_rows_fill(table_type: str, row: dict) -> dict:
    filled = {}
    for column in get_default_columns(table_type):
        if column_types.is_empty(row.get(column["name"])):
            handled, value = _typed_value(table_type, column["name"])
            if handled:
                filled[column["name"]] = value
    return filled


class DummyDataService:
    def __init__(self, table_store, row_store, cache=None, module_registry=None) -> None:
        self.table_store = table_store
        self.row_store = row_store
        self.cache = cache
        self.module_registry = module_registry

    def _module_types(self) -> dict:
        return self.module_registry.column_types() if self.module_registry is not None else {}

    def _find_module_generator(self, generator_id: str) -> dict | None:
        if self.module_registry is None:
            return None
        for generator in self.module_registry.table_generators():
            if generator.get("id") == generator_id:
                return generator
        return None

    def _table_rows(self, definition: dict, count: int, module_types: dict) -> list[dict]:
        columns = definition["columns"]
        table_type = definition["table_type"]
        if definition.get("phone"):
            return [phone_row(table_type) for _ in range(count)]
        if definition.get("module_generator"):
            sources = _source_values(columns, module_types)
            rows = generate_rows(columns, count, sources)
            for row in rows:
                row.update(_typed_rows_fill(table_type, row))
            return rows
        return [data_row(columns, table_type) for _ in range(count)]

    def generate_tables(
        self,
        workspace_id: str,
        user_id: str | None,
        table_count: int = 100,
        rows_per_table: int = 200,
        table_type: str | None = None,
        generator_id: str | None = None,
    ) -> dict:
        module_types = self._module_types()
        module_generator = self._find_module_generator(generator_id) if generator_id else None
        module_type_ids: set[str] = set()
        if module_generator is not None:
            prefix = f"{module_generator['module_id']}:"
            module_type_ids = {key[len(prefix):] for key in module_types if key.startswith(prefix)}
        started = time.monotonic()
        tables_created = 0
        rows_created = 0
        dropped_values = 0
        for index in range(1, table_count + 1):
            try:
                if module_generator is not None:
                    definition = module_generator_table(module_generator, module_generator["module_id"], module_type_ids, index)
                else:
                    definition = dummy_table(index, table_type)
                table = self.table_store.create_table(
                    {
                        "name": definition["name"],
                        "description": definition["description"],
                        "workspace_id": workspace_id,
                        "user_id": user_id,
                        "visibility": definition["visibility"],
                        "table_type": definition["table_type"],
                        "rental_period": "day" if definition["table_type"] == "rent" else None,
                    }
                )
                tables_created += 1
                columns = []
                for column in definition["columns"]:
                    columns.append(
                        self.table_store.create_column(
                            table["id"],
                            {k: column.get(k) for k in ("name", "type", "is_required", "allow_duplicates", "default_value", "position")},
                        )
                    )
                for row in self._table_rows(definition, rows_per_table, module_types):
                    cleaned, dropped = clean_row(row, columns, module_types)
                    dropped_values += dropped
                    self.row_store.create_row(table["id"], cleaned)
                    rows_created += 1
                if index % 10 == 0:
                    logger.info("dummy_progress tables=%s/%s rows=%s", index, table_count, rows_created)
            except Exception as exc:
                logger.error("dummy_table_failed index=%s/%s error=%s", index, table_count, exc)
                continue
        if self.cache is not None:
            self.cache.invalidate_public_tables()
        logger.info(
            "dummy_done tables=%s rows=%s dropped_values=%s total_ms=%.1f",
            tables_created,
            rows_created,
            dropped_values,
            (time.monotonic() - started) * 1000,
        )
        return {
            "tablesCreated": tables_created,
            "rowsCreated": rows_created,
            "averageRowsPerTable": round(rows_created / tables_created) if tables_created else 0,
            "droppedValues": dropped_values,
        }
