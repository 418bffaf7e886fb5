from __future__ import annotations

from typing import Any

from accessreview.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-User-Id header is required"),
    ),
    404: _response(
        "Not found",
        _error_example(
            code="NOT_FOUND",
            message="campaign not found: 7f3c",
            details={"resource": "campaign", "resource_id": "7f3c"},
        ),
    ),
    409: _response(
        "Invalid state transition",
        _error_example(
            code="INVALID_STATE",
            message="cannot start campaign 7f3c in status in_review; expected one of draft, collecting",
        ),
    ),
    422: _response(
        "Invalid configuration",
        _error_example(code="INVALID_CONFIG", message="invalid campaign scope: site_urls: Field required"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    502: _response(
        "Permission source failure",
        _error_example(code="PERMISSION_SOURCE_ERROR", message="Graph API error: 503"),
    ),
    503: _response(
        "Service unavailable",
        _error_example(code="SERVICE_UNAVAILABLE", message="Database unavailable"),
    ),
}
