from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from upgradeguard.apps.api.response import error_response
from upgradeguard.core.errors import (
    ConflictError,
    DatabaseError,
    IntegrityViolationError,
    NotFoundError,
    StateError,
    UpgradeGuardError,
    ValidationError,
)
from upgradeguard.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors map to fixed HTTP statuses; order matters for subclasses.
_DOMAIN_STATUS: tuple[tuple[type[UpgradeGuardError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
    (IntegrityViolationError, 409),
    (DatabaseError, 500),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def domain_status(exc: UpgradeGuardError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for UI/SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: UpgradeGuardError) -> JSONResponse:
    status_code = domain_status(exc)
    if status_code >= 500:
        logger.error("domain_error code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.details) if exc.details else None,
    )
    return JSONResponse(content=payload, status_code=status_code)


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Shield clients from raw database errors while keeping the cause in the logs.
    logger.error("database_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="DATABASE_ERROR", message="Database error")
    return JSONResponse(content=payload, status_code=500)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
