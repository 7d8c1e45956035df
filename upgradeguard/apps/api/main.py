from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from upgradeguard.apps.api.errors import (
    database_exception_handler,
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from upgradeguard.apps.api.response import API_VERSION, is_versioned_request
from upgradeguard.apps.api.routes.customizations import router as customizations_router
from upgradeguard.apps.api.routes.health import router as health_router
from upgradeguard.apps.api.routes.history import router as history_router
from upgradeguard.apps.api.routes.platform import router as platform_router
from upgradeguard.apps.api.routes.upgrades import router as upgrades_router
from upgradeguard.core.errors import UpgradeGuardError
from upgradeguard.core.logging import configure_logging
from upgradeguard.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
    "/v1/redoc",
)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="UpgradeGuard API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and "meta" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped = {
                            "data": payload,
                            "meta": {"request_id": request_id, "api_version": API_VERSION},
                        }
                        wrapped_response = JSONResponse(
                            content=wrapped,
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(UpgradeGuardError)
    async def _domain_exception_handler(request: Request, exc: UpgradeGuardError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(SQLAlchemyError)
    async def _database_exception_handler(request: Request, exc: SQLAlchemyError):
        return await database_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(platform_router, prefix=f"/{API_VERSION}")
    app.include_router(customizations_router, prefix=f"/{API_VERSION}")
    app.include_router(upgrades_router, prefix=f"/{API_VERSION}")
    app.include_router(history_router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="UpgradeGuard API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="UpgradeGuard API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": "http://localhost:8000"}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_paths = {"/v1/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
