from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

VALIDATION = "VALIDATION"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
UPSTREAM = "UPSTREAM"

_CATEGORY_STATUS = {
    VALIDATION: 422,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    CONFLICT: 409,
    UPSTREAM: 502,
}


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        category: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.category = category or _category_for_status(status_code)
        self.details = details or {}


def _category_for_status(status_code: int) -> str:
    for category, mapped_status in _CATEGORY_STATUS.items():
        if mapped_status == status_code:
            return category
    if status_code == 401:
        return "UNAUTHENTICATED"
    return "INTERNAL"


def _build(category: str, code: str, message: str, details: dict[str, Any] | None) -> ApiError:
    return ApiError(
        _CATEGORY_STATUS[category],
        code,
        message,
        category=category,
        details=details,
    )


def validation_error(code: str, message: str, **details: Any) -> ApiError:
    return _build(VALIDATION, code, message, details)


def forbidden(code: str, message: str, **details: Any) -> ApiError:
    return _build(FORBIDDEN, code, message, details)


def not_found(code: str, message: str, **details: Any) -> ApiError:
    return _build(NOT_FOUND, code, message, details)


def conflict(code: str, message: str, **details: Any) -> ApiError:
    return _build(CONFLICT, code, message, details)


def upstream_error(code: str, message: str, **details: Any) -> ApiError:
    # Punch sources are the only retryable failure class.
    details.setdefault("retryable", True)
    return _build(UPSTREAM, code, message, details)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    category: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "category": category or _category_for_status(status_code),
            "message": message,
            "details": details or {},
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))
