"""Service-level errors translated to JSON envelopes by the API layer."""

from __future__ import annotations

from typing import Any, Dict


Issue = Dict[str, Any]


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class ServiceError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status: int = 400,
        path: str | None = None,
        detail: dict | None = None,
        errors: list[Issue] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.path = path
        self.detail = detail
        self.errors = errors

    def issues(self) -> list[Issue]:
        if self.errors:
            return list(self.errors)
        return [issue(self.code, self.message, self.path, self.detail)]


class NotFoundError(ServiceError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("NOT_FOUND", message, status=404, path=path)


class ForbiddenError(ServiceError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("FORBIDDEN", message, status=403, path=path)


class ValidationFailed(ServiceError):
    def __init__(self, errors: list[Issue], message: str = "Validation failed") -> None:
        super().__init__("VALIDATION_FAILED", message, status=400, errors=errors)
