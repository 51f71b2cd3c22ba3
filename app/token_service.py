"""API token validation and administration."""

from __future__ import annotations

import ipaddress
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

from app.errors import NotFoundError, ServiceError, ValidationFailed, issue

logger = logging.getLogger("tabula.auth")

TOKEN_PREFIX = "tbl_"
VALID_PERMISSIONS = ("read", "write", "delete", "admin")
UNRESTRICTED_TOKEN_IDS = {"admin-token", "frontend-token"}


def generate_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def _parse_patterns(raw: Any) -> list[str] | None:
    """Decode a stored whitelist. None means unrestricted; ValueError on garbage."""
    if raw is None:
        return None
    if isinstance(raw, list):
        patterns = raw
    elif isinstance(raw, str):
        if not raw.strip():
            return None
        patterns = json.loads(raw)
        if patterns is None:
            return None
        if not isinstance(patterns, list):
            raise ValueError("whitelist must be a JSON array")
    else:
        raise ValueError("whitelist must be a JSON array")
    return [str(p).strip() for p in patterns if str(p).strip()]


def _ip_matches(client_ip: str, pattern: str) -> bool:
    if pattern == "0.0.0.0/0":
        return True
    if client_ip == pattern:
        return True
    if "/" not in pattern:
        return False
    try:
        network = ipaddress.ip_network(pattern, strict=False)
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    if network.version != address.version:
        return False
    return address in network


def check_ip_whitelist(client_ip: str, allowed_ips: Any) -> dict:
    try:
        patterns = _parse_patterns(allowed_ips)
    except ValueError:
        logger.warning("ip_whitelist_unparseable value=%s", allowed_ips)
        return {"allowed": False, "matched_pattern": None}
    if not patterns:
        return {"allowed": True, "matched_pattern": None}
    for pattern in patterns:
        if _ip_matches(client_ip, pattern):
            return {"allowed": True, "matched_pattern": pattern}
    return {"allowed": False, "matched_pattern": None}


def _domain_matches(domain: str, pattern: str) -> bool:
    domain = domain.lower()
    pattern = pattern.lower()
    if domain == pattern:
        return True
    if pattern.startswith("*."):
        return domain.endswith(pattern[2:])
    if pattern.endswith(":*"):
        host = pattern[:-2]
        return domain == host or domain.split(":", 1)[0] == host
    return domain.endswith(f".{pattern}")


def check_domain_whitelist(domain: str | None, allowed_domains: Any) -> dict:
    try:
        patterns = _parse_patterns(allowed_domains)
    except ValueError:
        logger.warning("domain_whitelist_unparseable value=%s", allowed_domains)
        return {"allowed": False, "matched_pattern": None}
    if not patterns or not domain:
        return {"allowed": True, "matched_pattern": None}
    for pattern in patterns:
        if _domain_matches(domain, pattern):
            return {"allowed": True, "matched_pattern": pattern}
    return {"allowed": False, "matched_pattern": None}


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value.strip() if isinstance(value, str) and value.strip() else None


def get_client_ip(headers: Mapping[str, str], peer: str | None = None) -> str:
    cf_ip = _header(headers, "CF-Connecting-IP")
    if cf_ip:
        return cf_ip
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer or "127.0.0.1"


def _host_of(url: str) -> str | None:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    return parsed.netloc or None


def get_request_domain(headers: Mapping[str, str]) -> str | None:
    for name in ("Origin", "Referer"):
        value = _header(headers, name)
        if value:
            host = _host_of(value)
            if host:
                return host
    return _header(headers, "Host")


def parse_token_permissions(permissions: Any) -> list[str]:
    if isinstance(permissions, list):
        parts = [str(p).strip() for p in permissions]
    elif isinstance(permissions, str):
        parts = [p.strip() for p in permissions.split(",")]
    else:
        parts = []
    parts = [p for p in parts if p]
    return parts or ["read"]


def has_permission(permissions: Iterable[str], required: str) -> bool:
    perms = set(permissions)
    if "admin" in perms:
        return True
    if required == "read" and "write" in perms:
        return True
    return required in perms


def _parse_expiry(expires_at: Any) -> datetime:
    """ISO-8601 expiry as an aware datetime; ValueError when unparseable."""
    if isinstance(expires_at, datetime):
        value = expires_at
    elif isinstance(expires_at, str):
        value = datetime.fromisoformat(expires_at.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"not a timestamp: {expires_at!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _is_expired(expires_at: Any) -> bool:
    if not expires_at:
        return False
    try:
        value = _parse_expiry(expires_at)
    except ValueError:
        # a stored expiry we cannot read never grants access
        return True
    return value <= datetime.now(timezone.utc)


def _normalize_expiry(raw: Any, errors: list) -> str | None:
    if raw is None or raw == "":
        return None
    try:
        return _parse_expiry(raw).isoformat().replace("+00:00", "Z")
    except ValueError:
        errors.append(issue("TOKEN_INVALID", "expires_at must be an ISO-8601 timestamp", "expires_at"))
        return None


def user_context(record: dict) -> dict:
    permissions = parse_token_permissions(record.get("permissions"))
    is_admin = bool(record.get("is_admin")) or "admin" in permissions
    return {
        "id": f"token:{record.get('id')}",
        "token_id": record.get("id"),
        "permissions": permissions,
        "is_admin": is_admin,
        "workspace_id": record.get("workspace_id") or "default",
        "table_access": list(record.get("table_access") or []),
        "token": record.get("token"),
    }


def validate_token(store, token_string: str, headers: Mapping[str, str], cache=None, peer: str | None = None) -> dict:
    """Resolve a bearer token into a user context.

    Returns ``{"ok": True, "user": {...}}`` or ``{"ok": False, "code", "error"}``.
    """
    record = cache.get_token(token_string) if cache is not None else None
    if record is None:
        record = store.get_by_token(token_string)
        if record is None:
            return {"ok": False, "code": "TOKEN_NOT_FOUND", "error": "Token not found"}
        if cache is not None:
            cache.set_token(token_string, record)

    if _is_expired(record.get("expires_at")):
        return {"ok": False, "code": "TOKEN_EXPIRED", "error": "Token expired"}

    client_ip = get_client_ip(headers, peer)
    ip_check = check_ip_whitelist(client_ip, record.get("allowed_ips"))
    if not ip_check["allowed"]:
        return {"ok": False, "code": "IP_NOT_ALLOWED", "error": f"IP address {client_ip} not allowed for this token"}

    domain = get_request_domain(headers)
    domain_check = check_domain_whitelist(domain, record.get("allowed_domains"))
    if not domain_check["allowed"]:
        return {"ok": False, "code": "DOMAIN_NOT_ALLOWED", "error": f"Domain {domain} not allowed for this token"}

    return {"ok": True, "user": user_context(record)}


def invalidate_token_cache(cache, token_string: str | None) -> None:
    if cache is None or not token_string:
        return
    cache.invalidate_token(token_string)


def mask_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 12:
        return token[:4] + "..."
    return f"{token[:8]}...{token[-4:]}"


# administration


def _normalize_whitelist(value: Any, path: str, errors: list) -> str | None:
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = [v.strip() for v in value.replace("\n", ",").split(",") if v.strip()]
        value = parsed
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        errors.append(issue("TOKEN_INVALID", f"{path} must be a list of strings", path))
        return None
    cleaned = [v.strip() for v in value if v.strip()]
    return json.dumps(cleaned) if cleaned else None


def _normalize_permissions(value: Any, errors: list) -> str:
    perms = parse_token_permissions(value)
    unknown = [p for p in perms if p not in VALID_PERMISSIONS]
    if unknown:
        errors.append(issue("TOKEN_INVALID", f"Unknown permissions: {', '.join(unknown)}", "permissions"))
    return ",".join(dict.fromkeys(perms))


def _resolve_table_access(table_store, workspace_id: str, requested: Any, errors: list) -> list[str]:
    requested_ids = [str(t) for t in requested or [] if t]
    existing = table_store.existing_ids(workspace_id, requested_ids) if requested_ids else set()
    access = [t for t in requested_ids if t in existing]
    if not access and table_store.count_tables(workspace_id) > 0:
        errors.append(issue("TOKEN_TABLE_ACCESS_REQUIRED", "Table access required", "table_access"))
    return access


def public_token(record: dict, reveal: bool = False) -> dict:
    data = dict(record)
    if not reveal:
        data["token"] = mask_token(record.get("token"))
    data["permissions_list"] = parse_token_permissions(record.get("permissions"))
    return data


def list_tokens(store, workspace_id: str) -> list[dict]:
    return [public_token(t) for t in store.list(workspace_id)]


def get_token(store, workspace_id: str, token_id: str) -> dict:
    record = store.get(token_id)
    if not record or (record.get("workspace_id") or "default") != workspace_id:
        raise NotFoundError("Token not found", "token_id")
    return record


def create_token(store, table_store, workspace_id: str, payload: dict, created_by: str | None = None) -> dict:
    errors: list = []
    name = (payload.get("name") or "").strip() if isinstance(payload.get("name"), str) else ""
    if not name:
        errors.append(issue("TOKEN_INVALID", "Name is required", "name"))
    elif store.find_by_name(workspace_id, name):
        raise ServiceError("TOKEN_NAME_EXISTS", "Name already exists", status=409, path="name")
    permissions = _normalize_permissions(payload.get("permissions"), errors)
    allowed_ips = _normalize_whitelist(payload.get("allowed_ips"), "allowed_ips", errors)
    allowed_domains = _normalize_whitelist(payload.get("allowed_domains"), "allowed_domains", errors)
    table_access = _resolve_table_access(table_store, workspace_id, payload.get("table_access"), errors)
    expires_at = _normalize_expiry(payload.get("expires_at"), errors)
    if errors:
        raise ValidationFailed(errors)
    record = store.create(
        {
            "token": generate_token(),
            "name": name,
            "permissions": permissions,
            "is_admin": "admin" in permissions.split(","),
            "allowed_ips": allowed_ips,
            "allowed_domains": allowed_domains,
            "table_access": table_access,
            "workspace_id": workspace_id,
            "expires_at": expires_at,
            "created_by": created_by,
        }
    )
    logger.info("token_created id=%s workspace=%s", record["id"], workspace_id)
    return record


def update_token(store, table_store, cache, workspace_id: str, token_id: str, payload: dict) -> dict:
    existing = get_token(store, workspace_id, token_id)
    errors: list = []
    changes: dict = {}
    if "name" in payload:
        name = payload.get("name").strip() if isinstance(payload.get("name"), str) else ""
        if not name:
            errors.append(issue("TOKEN_INVALID", "Name is required", "name"))
        else:
            other = store.find_by_name(workspace_id, name)
            if other and other.get("id") != token_id:
                raise ServiceError("TOKEN_NAME_EXISTS", "Name already exists", status=409, path="name")
            changes["name"] = name
    if "permissions" in payload:
        changes["permissions"] = _normalize_permissions(payload.get("permissions"), errors)
        changes["is_admin"] = "admin" in changes["permissions"].split(",")
    if "allowed_ips" in payload:
        changes["allowed_ips"] = _normalize_whitelist(payload.get("allowed_ips"), "allowed_ips", errors)
    if "allowed_domains" in payload:
        changes["allowed_domains"] = _normalize_whitelist(payload.get("allowed_domains"), "allowed_domains", errors)
    if "table_access" in payload:
        changes["table_access"] = _resolve_table_access(table_store, workspace_id, payload.get("table_access"), errors)
    if "expires_at" in payload:
        changes["expires_at"] = _normalize_expiry(payload.get("expires_at"), errors)
    if errors:
        raise ValidationFailed(errors)
    record = store.update(token_id, changes)
    invalidate_token_cache(cache, existing.get("token"))
    if cache is not None:
        cache.invalidate_user_access(f"token:{token_id}")
    return record


def regenerate_token(store, cache, workspace_id: str, token_id: str) -> dict:
    existing = get_token(store, workspace_id, token_id)
    record = store.update(token_id, {"token": generate_token()})
    invalidate_token_cache(cache, existing.get("token"))
    logger.info("token_regenerated id=%s", token_id)
    return record


def delete_token(store, cache, workspace_id: str, token_id: str) -> None:
    existing = get_token(store, workspace_id, token_id)
    store.delete(token_id)
    invalidate_token_cache(cache, existing.get("token"))
    if cache is not None:
        cache.invalidate_user_access(f"token:{token_id}")
    logger.info("token_deleted id=%s", token_id)


def mass_delete_tokens(store, cache, workspace_id: str, token_ids: Iterable[str]) -> int:
    deleted = 0
    for token_id in token_ids:
        try:
            delete_token(store, cache, workspace_id, token_id)
        except NotFoundError:
            continue
        deleted += 1
    return deleted
