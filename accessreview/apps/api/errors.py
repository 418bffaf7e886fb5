from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from accessreview.apps.api.response import error_response
from accessreview.core.errors import (
    AccessReviewError,
    InvalidConfigError,
    InvalidStateError,
    NotFoundError,
    PermissionSourceAuthError,
    PermissionSourceError,
)
from accessreview.persistence.db import is_persistence_unavailable


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "INVALID_STATE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "PERMISSION_SOURCE_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first matching class decides status and code.
_DOMAIN_ERROR_STATUS: tuple[tuple[type[AccessReviewError], int, str], ...] = (
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidConfigError, 422, "INVALID_CONFIG"),
    (InvalidStateError, 409, "INVALID_STATE"),
    (PermissionSourceAuthError, 502, "PERMISSION_SOURCE_AUTH_ERROR"),
    (PermissionSourceError, 502, "PERMISSION_SOURCE_ERROR"),
)


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=dict(headers) if headers else None)


def domain_error_status(exc: AccessReviewError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def access_review_exception_handler(request: Request, exc: AccessReviewError) -> JSONResponse:
    # Services raise domain errors; routes never catch them.
    status_code, code = domain_error_status(exc)
    details = None
    if isinstance(exc, NotFoundError):
        details = {"resource": exc.resource, "resource_id": exc.resource_id}
    if isinstance(exc, PermissionSourceError):
        logger.warning("permission_source_failed", extra={"path": request.url.path, "error": str(exc)})
    return _envelope(request, status_code, code, str(exc), details)


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    if is_persistence_unavailable(exc):
        logger.error("database_unavailable", extra={"path": request.url.path})
        return _envelope(request, 503, "SERVICE_UNAVAILABLE", "Database unavailable")
    logger.exception("database_error", extra={"path": request.url.path})
    return _envelope(request, 500, "DATABASE_ERROR", "Database error")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes raise HTTPException(detail={"code", "message"}); unknown routes arrive with a plain string.
    fallback_code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    detail = exc.detail
    details: dict[str, Any] | None = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback_code)
        message = str(detail.get("message") or "Request failed")
        details = {key: value for key, value in detail.items() if key not in ("code", "message")} or None
    else:
        code = fallback_code
        message = detail if isinstance(detail, str) and detail else "Request failed"
    return _envelope(request, exc.status_code, code, message, details, exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", extra={"path": request.url.path})
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
