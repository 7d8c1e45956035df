from __future__ import annotations

from typing import Any

from upgradeguard.apps.api.response import ErrorEnvelope


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


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Customization not found"),
    ),
    409: _response(
        "Conflict or invalid state",
        _error_example(
            code="CONFLICT",
            message="Customization was modified since it was read",
            details={"current_version": 3},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Configuration body type does not match the platform definition"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}
