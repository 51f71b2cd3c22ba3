"""FastAPI app for the Tabula dynamic tables service."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import json
import logging
import time

from app import dummy_data
from app import token_service
from app.auth import TokenAuthMiddleware
from app.cache_service import CacheService
from app.column_types import list_column_types
from app.commerce import CommerceService
from app.db import get_db_stats, reset_db_stats
from app.dummy_data import DummyDataService
from app.errors import ForbiddenError, ServiceError, ValidationFailed, issue
from app.inventory import InventoryService
from app.kv import kv_from_env
from app.modules import ModuleService
from app.stores import (
    MemoryInventoryStore,
    MemoryRentalStore,
    MemoryRowStore,
    MemorySaleStore,
    MemoryTableStore,
    MemoryTokenStore,
)
from app.table_data import TableDataService
from app.table_schema import TABLE_TYPES, normalize_table_type
from app.tables import TableService
from manifest_store import ManifestStore
from module_registry import ModuleRegistry


app = FastAPI(title="Tabula")
logger = logging.getLogger("tabula")
logging.basicConfig(level=logging.INFO)

APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
USE_DB = os.getenv("USE_DB", "").strip() == "1"
REQ_SLOW_MS = float(os.getenv("TABULA_REQ_SLOW_MS", "250"))
REQ_DB_SLOW_MS = float(os.getenv("TABULA_REQ_DB_SLOW_MS", "100"))
_LOCAL_CORS_REGEX = r"^http://(localhost|127\.0\.0\.1):\d+$"
_EXTRA_CORS_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in os.getenv("TABULA_CORS_ORIGINS", "").split(",")
    if origin.strip()
]

if USE_DB:
    from app.stores_db import (
        DbInventoryStore,
        DbManifestStore,
        DbModuleRegistry,
        DbRentalStore,
        DbRowStore,
        DbSaleStore,
        DbTableStore,
        DbTokenStore,
        ensure_schema,
    )

    ensure_schema()
    token_store = DbTokenStore()
    table_store = DbTableStore()
    row_store = DbRowStore()
    sale_store = DbSaleStore()
    rental_store = DbRentalStore()
    inventory_store = DbInventoryStore()
    store = DbManifestStore()
    registry = DbModuleRegistry(store)
else:
    token_store = MemoryTokenStore()
    table_store = MemoryTableStore()
    row_store = MemoryRowStore()
    sale_store = MemorySaleStore()
    rental_store = MemoryRentalStore()
    inventory_store = MemoryInventoryStore()
    store = ManifestStore()
    registry = ModuleRegistry(store)

cache = CacheService(kv_from_env(os.getenv("REDIS_URL", "").strip() or None, os.getenv("TABULA_KV_PREFIX", "tabula:")))
inventory = InventoryService(inventory_store)
tables = TableService(table_store, row_store, cache, inventory, registry)
table_data = TableDataService(tables, row_store, cache, inventory)
commerce = CommerceService(table_store, row_store, sale_store, rental_store, inventory, cache, tables=tables)
modules = ModuleService(registry, table_store)
dummy = DummyDataService(table_store, row_store, cache, registry)
logger.info("tabula_start env=%s use_db=%s", APP_ENV, USE_DB)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    db_ms = db_stats.get("total_ms", 0.0)
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_ms,
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS or db_ms >= REQ_DB_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_ms:.1f}"
        response.headers["X-Route"] = route_name
    return response


app.add_middleware(TokenAuthMiddleware, token_store=lambda: token_store, cache=lambda: cache)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_EXTRA_CORS_ORIGINS,
    allow_origin_regex=_LOCAL_CORS_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status >= 500:
        logger.error("service_error path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    body = {"ok": False, "errors": exc.issues(), "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=exc.status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


# request helpers


def _user(request: Request) -> dict:
    user = getattr(request.state, "user", None)
    if not user:
        raise ServiceError("AUTH_REQUIRED", "Authentication required", status=401, path="Authorization")
    return user


def _require_admin(request: Request) -> dict:
    user = _user(request)
    if not user.get("is_admin"):
        raise ForbiddenError("Admin access required")
    return user


def _require_permission(request: Request, permission: str) -> dict:
    user = _user(request)
    if not token_service.has_permission(user.get("permissions") or [], permission):
        raise ForbiddenError(f"Token lacks {permission} permission")
    return user


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationFailed([issue("INVALID_JSON", "Request body must be valid JSON", "body")])
    if not isinstance(body, dict):
        raise ValidationFailed([issue("INVALID_JSON", "Request body must be a JSON object", "body")])
    return body


def _row_filters(request: Request) -> dict:
    return {key[len("filter."):]: value for key, value in request.query_params.items() if key.startswith("filter.") and len(key) > 7}


def _int_param(value: Any, path: str, default: int, low: int, high: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed([issue("INVALID_NUMBER", f"{path} must be an integer", path)])
    if number < low or number > high:
        raise ValidationFailed([issue("OUT_OF_RANGE", f"{path} must be between {low} and {high}", path)])
    return number


def _paginate(items: list, request: Request) -> dict:
    limit = _int_param(request.query_params.get("limit"), "limit", 50, 1, 500)
    offset = _int_param(request.query_params.get("offset"), "offset", 0, 0, 10_000_000)
    return {"items": items[offset : offset + limit], "total": len(items), "limit": limit, "offset": offset}


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


# tokens


@app.get("/tokens")
async def tokens_list(request: Request):
    user = _require_admin(request)
    return _ok_response({"items": token_service.list_tokens(token_store, user["workspace_id"])})


@app.post("/tokens")
async def tokens_create(request: Request):
    user = _require_admin(request)
    body = await _json_body(request)
    record = token_service.create_token(token_store, table_store, user["workspace_id"], body, created_by=user["id"])
    return _ok_response({"token": token_service.public_token(record, reveal=True)}, status=201)


@app.post("/tokens/mass-action")
async def tokens_mass_action(request: Request):
    user = _require_admin(request)
    body = await _json_body(request)
    if body.get("action") != "delete":
        raise ValidationFailed([issue("INVALID_ACTION", f"Action {body.get('action')} is not supported", "action")])
    token_ids = body.get("token_ids")
    if not isinstance(token_ids, list) or not token_ids:
        raise ValidationFailed([issue("TOKEN_IDS_REQUIRED", "token_ids must be a non-empty list", "token_ids")])
    deleted = token_service.mass_delete_tokens(token_store, cache, user["workspace_id"], token_ids)
    return _ok_response({"action": "delete", "affected": deleted})


@app.get("/tokens/{token_id}")
async def tokens_get(token_id: str, request: Request):
    user = _require_admin(request)
    record = token_service.get_token(token_store, user["workspace_id"], token_id)
    return _ok_response({"token": token_service.public_token(record)})


@app.put("/tokens/{token_id}")
async def tokens_update(token_id: str, request: Request):
    user = _require_admin(request)
    body = await _json_body(request)
    record = token_service.update_token(token_store, table_store, cache, user["workspace_id"], token_id, body)
    return _ok_response({"token": token_service.public_token(record)})


@app.post("/tokens/{token_id}/regenerate")
async def tokens_regenerate(token_id: str, request: Request):
    user = _require_admin(request)
    record = token_service.regenerate_token(token_store, cache, user["workspace_id"], token_id)
    return _ok_response({"token": token_service.public_token(record, reveal=True)})


@app.delete("/tokens/{token_id}")
async def tokens_delete(token_id: str, request: Request):
    user = _require_admin(request)
    token_service.delete_token(token_store, cache, user["workspace_id"], token_id)
    return _ok_response({"deleted": token_id})


# tables


@app.get("/tables")
async def tables_list(request: Request):
    user = _require_permission(request, "read")
    params = request.query_params
    if params.get("table_type") and params["table_type"] not in TABLE_TYPES:
        raise ValidationFailed([issue("TABLE_INVALID", f"table_type must be one of {', '.join(TABLE_TYPES)}", "table_type")])
    result = tables.list_tables(
        user,
        {"visibility": params.get("visibility"), "table_type": params.get("table_type"), "search": params.get("search")},
        limit=_int_param(params.get("limit"), "limit", 50, 1, 500),
        offset=_int_param(params.get("offset"), "offset", 0, 0, 10_000_000),
    )
    return _ok_response(result)


@app.post("/tables")
async def tables_create(request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    result = tables.create_table(user, body)
    return _ok_response(result, status=201)


@app.get("/tables/{table_id}")
async def tables_get(table_id: str, request: Request):
    user = _require_permission(request, "read")
    return _ok_response(tables.describe(user, table_id))


@app.put("/tables/{table_id}")
async def tables_update(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    result = tables.update_table(user, table_id, body)
    warnings = [
        issue("COLUMNS_ADDED", f"Added required column {c['name']}", c["name"])
        for c in result["added_columns"]
    ]
    return _ok_response(result, warnings=warnings)


@app.delete("/tables/{table_id}")
async def tables_delete(table_id: str, request: Request):
    user = _require_permission(request, "delete")
    tables.delete_table(user, table_id)
    return _ok_response({"deleted": table_id})


@app.post("/tables/{table_id}/clone")
async def tables_clone(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    return _ok_response(tables.clone_table(user, table_id, body), status=201)


@app.post("/tables/{table_id}/columns")
async def columns_add(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    return _ok_response({"column": tables.add_column(user, table_id, body)}, status=201)


@app.post("/tables/{table_id}/columns/reorder")
async def columns_reorder(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    column_ids = body.get("column_ids")
    if not isinstance(column_ids, list):
        raise ValidationFailed([issue("COLUMN_ORDER_INVALID", "column_ids must be a list", "column_ids")])
    return _ok_response({"columns": tables.reorder_columns(user, table_id, column_ids)})


@app.post("/tables/{table_id}/columns/mass-action")
async def columns_mass_action(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    column_ids = body.get("column_ids")
    if not isinstance(column_ids, list) or not column_ids:
        raise ValidationFailed([issue("COLUMN_IDS_REQUIRED", "column_ids must be a non-empty list", "column_ids")])
    return _ok_response(tables.column_mass_action(user, table_id, body.get("action"), column_ids))


@app.post("/tables/{table_id}/columns/fix-names")
async def columns_fix_names(table_id: str, request: Request):
    user = _require_permission(request, "write")
    return _ok_response(tables.fix_column_names(user, table_id))


@app.put("/tables/{table_id}/columns/{column_id}")
async def columns_update(table_id: str, column_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    return _ok_response({"column": tables.update_column(user, table_id, column_id, body)})


@app.delete("/tables/{table_id}/columns/{column_id}")
async def columns_delete(table_id: str, column_id: str, request: Request):
    user = _require_permission(request, "delete")
    tables.delete_column(user, table_id, column_id)
    return _ok_response({"deleted": column_id})


@app.post("/tables/{table_id}/columns/{column_id}/preview-type")
async def columns_preview_type(table_id: str, column_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    return _ok_response({"preview": tables.preview_type_change(user, table_id, column_id, body.get("new_type"))})


@app.post("/tables/{table_id}/columns/{column_id}/apply-type")
async def columns_apply_type(table_id: str, column_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    result = tables.apply_type_change(user, table_id, column_id, body.get("new_type"), body.get("convert_values", True) is not False)
    return _ok_response(result)


@app.get("/tables/{table_id}/validate")
async def tables_validate(table_id: str, request: Request):
    user = _require_permission(request, "read")
    return _ok_response({"report": table_data.validate(user, table_id)})


@app.delete("/tables/{table_id}/invalid-rows")
async def tables_delete_invalid(table_id: str, request: Request):
    user = _require_permission(request, "delete")
    return _ok_response(table_data.delete_invalid_rows(user, table_id))


# table data


@app.get("/tables/{table_id}/data")
async def data_list(table_id: str, request: Request):
    user = _require_permission(request, "read")
    params = request.query_params
    result = table_data.list_rows(
        user,
        table_id,
        {
            "filters": _row_filters(request),
            "search": params.get("search"),
            "sort_by": params.get("sort_by"),
            "sort_dir": params.get("sort_dir"),
            "limit": _int_param(params.get("limit"), "limit", 50, 1, 500),
            "offset": _int_param(params.get("offset"), "offset", 0, 0, 10_000_000),
        },
    )
    return _ok_response(result)


@app.post("/tables/{table_id}/data")
async def data_create(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    result = table_data.create_row(user, table_id, body.get("data", body))
    return _ok_response({"row": result["row"]}, warnings=result["warnings"], status=201)


@app.post("/tables/{table_id}/data/mass-action")
async def data_mass_action(table_id: str, request: Request):
    body = await _json_body(request)
    needed = {"delete": "delete", "set_field_value": "write"}.get(body.get("action"), "read")
    user = _require_permission(request, needed)
    return _ok_response(table_data.mass_action(user, table_id, body))


@app.get("/tables/{table_id}/data/{row_id}")
async def data_get(table_id: str, row_id: str, request: Request):
    user = _require_permission(request, "read")
    return _ok_response({"row": table_data.get_row(user, table_id, row_id)})


@app.put("/tables/{table_id}/data/{row_id}")
async def data_update(table_id: str, row_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    result = table_data.update_row(user, table_id, row_id, body.get("data", body))
    return _ok_response({"row": result["row"]}, warnings=result["warnings"])


@app.delete("/tables/{table_id}/data/{row_id}")
async def data_delete(table_id: str, row_id: str, request: Request):
    user = _require_permission(request, "delete")
    table_data.delete_row(user, table_id, row_id)
    return _ok_response({"deleted": row_id})


@app.post("/tables/{table_id}/import")
async def data_import(table_id: str, request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    result = table_data.import_rows(user, table_id, body)
    warnings = []
    if result["warning_count"]:
        warnings.append(issue("IMPORT_WARNINGS", f"{result['warning_count']} values need review", "rows"))
    return _ok_response(result, warnings=warnings)


@app.get("/tables/{table_id}/export")
async def data_export(table_id: str, request: Request):
    user = _require_permission(request, "read")
    return _ok_response({"export": table_data.export(user, table_id)})


# schema


@app.get("/schema/column-types")
async def schema_column_types(request: Request):
    _user(request)
    return _ok_response({"items": list_column_types(registry.column_types())})


@app.get("/schema/generators")
async def schema_generators(request: Request):
    _user(request)
    return _ok_response(dummy_data.list_generators())


@app.post("/schema/generators/{generator_id}/generate")
async def schema_generator_run(generator_id: str, request: Request):
    _user(request)
    body = await _json_body(request)
    count = _int_param(body.get("count"), "count", 10, 1, 1000)
    try:
        values = dummy_data.run_generator(generator_id, count, body.get("options") or {})
    except KeyError:
        return _error_response("GENERATOR_NOT_FOUND", f"Unknown generator: {generator_id}", "generator_id", status=404)
    return _ok_response({"generator_id": generator_id, "values": values})


@app.get("/schema/table-generators")
async def schema_table_generators(request: Request):
    _user(request)
    names = {m["module_id"]: m.get("name") for m in registry.list()}
    return _ok_response({"items": dummy_data.list_table_generators(registry.table_generators(), names)})


# modules


@app.get("/admin/modules")
async def modules_list(request: Request):
    _require_admin(request)
    return _ok_response({"items": modules.list_modules()})


@app.post("/admin/modules/install")
async def modules_install(request: Request):
    user = _require_admin(request)
    body = await _json_body(request)
    manifest = body.get("manifest", body)
    result = modules.install(manifest, actor={"id": user["id"]})
    return _ok_response({"module": result["module"]}, warnings=result["warnings"], status=201)


@app.post("/admin/modules/{module_id:path}/enable")
async def modules_enable(module_id: str, request: Request):
    user = _require_admin(request)
    result = modules.set_enabled(module_id, True, actor={"id": user["id"]})
    return _ok_response({"module": result["module"]}, warnings=result["warnings"])


@app.post("/admin/modules/{module_id:path}/disable")
async def modules_disable(module_id: str, request: Request):
    user = _require_admin(request)
    result = modules.set_enabled(module_id, False, actor={"id": user["id"]})
    return _ok_response({"module": result["module"]}, warnings=result["warnings"])


@app.get("/admin/modules/{module_id:path}/settings")
async def modules_settings_get(module_id: str, request: Request):
    _require_admin(request)
    return _ok_response({"settings": modules.get_settings(module_id)})


@app.patch("/admin/modules/{module_id:path}/settings")
async def modules_settings_update(module_id: str, request: Request):
    user = _require_admin(request)
    body = await _json_body(request)
    settings = modules.update_settings(module_id, body.get("values", body), actor={"id": user["id"]})
    return _ok_response({"settings": settings})


@app.get("/admin/modules/{module_id:path}/history")
async def modules_history(module_id: str, request: Request):
    _require_admin(request)
    return _ok_response({"items": modules.history(module_id)})


@app.get("/admin/modules/{module_id:path}")
async def modules_get(module_id: str, request: Request):
    _require_admin(request)
    return _ok_response({"module": modules.get_module(module_id)})


@app.delete("/admin/modules/{module_id:path}")
async def modules_uninstall(module_id: str, request: Request, force: bool = False):
    user = _require_admin(request)
    result = modules.uninstall(module_id, force=force, actor={"id": user["id"]})
    warnings = []
    if result["affected_tables"]:
        warnings.append(issue("MODULE_TYPES_ORPHANED", "Tables still reference this module's column types", "module_id", {"tables": result["affected_tables"]}))
    return _ok_response(result, warnings=warnings)


# dummy data


@app.post("/admin/generate-dummy-tables")
async def generate_dummy_tables(request: Request):
    user = _require_admin(request)
    body = await _json_body(request)
    table_count = _int_param(body.get("tableCount"), "tableCount", 100, 1, 500)
    rows_per_table = _int_param(body.get("rowsPerTable"), "rowsPerTable", 200, 1, 1000)
    table_type = body.get("tableType")
    if table_type is not None and table_type not in TABLE_TYPES:
        raise ValidationFailed([issue("INVALID_TABLE_TYPE", f"tableType must be one of {', '.join(TABLE_TYPES)}", "tableType")])
    if table_type is None and body.get("forSaleOnly"):
        table_type = normalize_table_type(None, True)
    generator_id = body.get("generatorId")
    if generator_id:
        built_in = {g["id"]: g for g in dummy_data.BUILT_IN_TABLE_GENERATORS}
        if generator_id in built_in:
            table_type = table_type or built_in[generator_id]["tableType"]
            generator_id = None
        elif not any(g.get("id") == generator_id for g in registry.table_generators()):
            return _error_response("GENERATOR_NOT_FOUND", f"Unknown table generator: {generator_id}", "generatorId", status=404)
    result = dummy.generate_tables(
        user["workspace_id"],
        user["id"],
        table_count=table_count,
        rows_per_table=rows_per_table,
        table_type=table_type,
        generator_id=generator_id,
    )
    return _ok_response(result)


# inventory, sales, rentals


@app.get("/inventory/transactions")
async def inventory_list(request: Request):
    user = _require_admin(request)
    params = request.query_params
    result = inventory.list_transactions(
        user["workspace_id"],
        {"table_id": params.get("table_id"), "item_id": params.get("item_id"), "transaction_type": params.get("transaction_type")},
        limit=_int_param(params.get("limit"), "limit", 50, 1, 500),
        offset=_int_param(params.get("offset"), "offset", 0, 0, 10_000_000),
    )
    return _ok_response(result)


@app.delete("/inventory/clear-all")
async def inventory_clear(request: Request):
    user = _require_admin(request)
    return _ok_response({"deleted": inventory.clear_all(user["workspace_id"])})


@app.get("/sales")
async def sales_list(request: Request):
    user = _require_admin(request)
    params = request.query_params
    sales = commerce.list_sales(
        user,
        {
            "table_id": params.get("table_id"),
            "sale_status": params.get("sale_status"),
            "customer_id": params.get("customer_id"),
            "date_from": params.get("date_from"),
            "date_to": params.get("date_to"),
        },
    )
    return _ok_response(_paginate(sales, request))


@app.get("/sales/analytics")
async def sales_analytics(request: Request):
    user = _require_admin(request)
    params = request.query_params
    stats = commerce.sales_analytics(user, params.get("date_from"), params.get("date_to"), params.get("table_id"))
    return _ok_response({"analytics": stats})


@app.get("/sales/summary")
async def sales_summary(request: Request):
    user = _require_admin(request)
    return _ok_response({"summary": commerce.sales_summary(user)})


@app.get("/rentals")
async def rentals_list(request: Request):
    user = _require_admin(request)
    params = request.query_params
    result = commerce.list_rentals(user, {"table_id": params.get("table_id"), "status": params.get("status")})
    page = _paginate(result["items"], request)
    return _ok_response(dict(page, by_status=result["by_status"], total_revenue=result["total_revenue"]))


# public api


@app.get("/public/tables")
async def public_tables(request: Request):
    user = _require_permission(request, "read")
    return _ok_response({"items": tables.public_tables(user)})


@app.get("/public/tables/{table_id}/items")
async def public_items(table_id: str, request: Request):
    user = _require_permission(request, "read")
    params = request.query_params
    result = table_data.public_items(
        user,
        table_id,
        {
            "filters": _row_filters(request),
            "search": params.get("search"),
            "limit": _int_param(params.get("limit"), "limit", 50, 1, 500),
            "offset": _int_param(params.get("offset"), "offset", 0, 0, 10_000_000),
        },
    )
    return _ok_response(result)


@app.get("/public/tables/{table_id}/items/{item_id}")
async def public_item(table_id: str, item_id: str, request: Request):
    user = _require_permission(request, "read")
    return _ok_response({"item": table_data.public_item(user, table_id, item_id)})


@app.get("/public/tables/{table_id}/items/{item_id}/availability")
async def public_availability(table_id: str, item_id: str, request: Request):
    user = _require_permission(request, "read")
    table_data.public_table(user, table_id)
    quantity = _int_param(request.query_params.get("quantity"), "quantity", 1, 1, 1_000_000)
    return _ok_response({"availability": commerce.check_availability(user, table_id, item_id, quantity)})


@app.get("/public/records")
async def public_records(request: Request):
    user = _require_permission(request, "read")
    params = request.query_params
    table_ids = [t.strip() for t in (params.get("table_ids") or "").split(",") if t.strip()]
    result = table_data.search_records(user, table_ids, _row_filters(request), params.get("limit"), params.get("offset"))
    return _ok_response(result)


@app.post("/public/buy")
async def public_buy(request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    if body.get("table_id"):
        table_data.public_table(user, body["table_id"])
    return _ok_response({"sale": commerce.purchase(user, body)}, status=201)


@app.post("/public/rent")
async def public_rent(request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    if body.get("table_id"):
        table_data.public_table(user, body["table_id"])
    return _ok_response({"rental": commerce.rent(user, body)}, status=201)


@app.post("/public/release")
async def public_release(request: Request):
    user = _require_permission(request, "write")
    body = await _json_body(request)
    if body.get("table_id"):
        table_data.public_table(user, body["table_id"])
    return _ok_response({"rental": commerce.release(user, body)})
