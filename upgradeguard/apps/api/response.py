from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class PageMeta(BaseModel):
    # Echo offset pagination so clients can request the next page.
    offset: int
    limit: int
    returned: int


class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    request_id: str
    api_version: str = Field(default=API_VERSION)
    page: PageMeta | None = None


class ErrorDetail(BaseModel):
    # Standardize error codes/messages with optional structured details.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def success_response(
    *,
    request: Request,
    data: Any,
    page: PageMeta | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request), page=page)
    return {"data": data, "meta": meta.model_dump(exclude_none=True)}


def page_meta(*, offset: int, limit: int, returned: int) -> PageMeta:
    return PageMeta(offset=offset, limit=limit, returned=returned)


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Return the standard error envelope with request metadata.
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump(exclude_none=True)}
