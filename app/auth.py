"""Bearer token auth middleware (API tokens and dashboard session JWTs)."""

from __future__ import annotations

import hmac
import logging
import os
import re
import time
from typing import Any, Callable, Optional

from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.token_service import user_context, validate_token

logger = logging.getLogger("tabula.auth")

ADMIN_TOKEN_ID = "admin-token"
PUBLIC_PATHS = {"/health"}
_LOCAL_ORIGIN_RE = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _attach_local_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and _LOCAL_ORIGIN_RE.match(origin):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _unauthorized(request: Request, code: str, message: str, detail: Any = None) -> JSONResponse:
    return _attach_local_cors(
        request,
        JSONResponse(
            {
                "ok": False,
                "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
                "warnings": [],
            },
            status_code=401,
        ),
    )


def admin_context(workspace_id: Optional[str] = None, user_id: Optional[str] = None) -> dict:
    context = user_context(
        {
            "id": ADMIN_TOKEN_ID,
            "permissions": "admin",
            "is_admin": True,
            "workspace_id": workspace_id or os.getenv("TABULA_ADMIN_WORKSPACE", "default"),
        }
    )
    if user_id:
        context["id"] = user_id
    return context


def decode_session_token(token: str, secret: str) -> dict:
    """Claims of an HS256 dashboard session token; raises JWTError."""
    claims = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
    if not claims.get("sub"):
        raise JWTError("Missing subject")
    return claims


def issue_session_token(user_id: str, secret: str, workspace_id: str = "default", ttl_s: int = 3600) -> str:
    now = int(time.time())
    return jwt.encode({"sub": user_id, "workspace_id": workspace_id, "iat": now, "exp": now + ttl_s}, secret, algorithm="HS256")


class TokenAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, token_store: Callable[[], Any], cache: Callable[[], Any]) -> None:
        super().__init__(app)
        self._token_store = token_store
        self._cache = cache

    def _authenticate(self, request: Request, token: str) -> dict:
        admin_token = os.getenv("TABULA_ADMIN_TOKEN", "").strip()
        if admin_token and hmac.compare_digest(token, admin_token):
            return {"ok": True, "user": admin_context()}

        jwt_secret = os.getenv("TABULA_JWT_SECRET", "").strip()
        if jwt_secret and token.count(".") == 2:
            try:
                claims = decode_session_token(token, jwt_secret)
            except JWTError as exc:
                return {"ok": False, "code": "AUTH_INVALID_TOKEN", "error": "Invalid session token", "detail": {"error": str(exc)}}
            user = admin_context(claims.get("workspace_id"), claims["sub"])
            user["claims"] = claims
            return {"ok": True, "user": user}

        peer = request.client.host if request.client else None
        return validate_token(self._token_store(), token, request.headers, cache=self._cache(), peer=peer)

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        if _truthy(os.getenv("TABULA_DISABLE_AUTH")):
            request.state.user = admin_context()
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _unauthorized(request, "AUTH_MISSING_TOKEN", "Missing bearer token")

        try:
            result = self._authenticate(request, token)
        except Exception as exc:
            logger.error("auth_lookup_failed path=%s error=%s", request.url.path, exc)
            return _unauthorized(request, "AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        if not result["ok"]:
            logger.warning("auth_rejected path=%s code=%s", request.url.path, result.get("code"))
            return _unauthorized(request, result.get("code") or "AUTH_INVALID_TOKEN", result.get("error") or "Invalid bearer token", result.get("detail"))

        request.state.user = result["user"]
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
