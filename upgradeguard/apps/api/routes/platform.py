from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.apps.api.deps import Principal, get_db, reject_tenant_id_in_body, require_role
from upgradeguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from upgradeguard.apps.api.response import SuccessEnvelope, page_meta, success_response
from upgradeguard.core.config import get_settings
from upgradeguard.core.errors import NotFoundError
from upgradeguard.services import platform_configs as platform_service
from upgradeguard.services.upgrade_summary import current_version_value, get_current_version, marker_state


router = APIRouter(prefix="/platform", tags=["platform"], responses=DEFAULT_ERROR_RESPONSES)


class PlatformConfigResponse(BaseModel):
    id: str
    config_type: str
    resource_key: str
    platform_version: str
    schema_version: str
    body: Any = None
    checksum: str
    status: str
    is_extensible: bool
    description: str | None = None
    published_by: str | None = None
    published_at: str | None = None


class PlatformVersionResponse(BaseModel):
    tenant_id: str
    platform_version: str
    previous_platform_version: str | None = None
    last_manifest_id: str | None = None
    upgraded_by: str | None = None
    upgraded_at: str | None = None
    row_version: int


class PlatformConfigPublishRequest(BaseModel):
    config_type: str = Field(min_length=1, max_length=128)
    resource_key: str = Field(min_length=1, max_length=256)
    platform_version: str = Field(min_length=1, max_length=64)
    body: Any = None
    schema_version: str = Field(default="1", max_length=32)
    status: Literal["active", "deprecated", "removed"] = "active"
    is_extensible: bool = False
    description: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


@router.get("/configs", response_model=SuccessEnvelope[list[PlatformConfigResponse]])
async def list_platform_configs(
    request: Request,
    config_type: str | None = Query(default=None),
    resource_key: str | None = Query(default=None),
    platform_version: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = get_settings()
    page_size = min(limit or settings.default_page_size, settings.max_page_size)
    rows = await platform_service.list_snapshots(
        db,
        config_type=config_type,
        resource_key=resource_key,
        platform_version=platform_version,
        offset=offset,
        limit=page_size,
    )
    return success_response(
        request=request,
        data=[platform_service.serialize_snapshot(row) for row in rows],
        page=page_meta(offset=offset, limit=page_size, returned=len(rows)),
    )


@router.get("/configs/{config_type}/{resource_key}", response_model=SuccessEnvelope[PlatformConfigResponse])
async def get_platform_config(
    config_type: str,
    resource_key: str,
    request: Request,
    version: str | None = Query(default=None, max_length=64),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Without an explicit version the caller sees the definition of its current release.
    as_of = version or await current_version_value(db, principal.tenant_id)
    snapshot = await platform_service.resolve_snapshot(
        db,
        config_type=config_type,
        resource_key=resource_key,
        as_of_version=as_of,
    )
    if snapshot is None:
        raise NotFoundError(
            "Platform config not found",
            details={"config_type": config_type, "resource_key": resource_key, "version": as_of},
        )
    return success_response(request=request, data=platform_service.serialize_snapshot(snapshot))


@router.post(
    "/configs",
    status_code=201,
    response_model=SuccessEnvelope[PlatformConfigResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def publish_platform_config(
    payload: PlatformConfigPublishRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row, created = await platform_service.publish_snapshot(
        db,
        config_type=payload.config_type,
        resource_key=payload.resource_key,
        platform_version=payload.platform_version,
        body=payload.body,
        schema_version=payload.schema_version,
        status=payload.status,
        is_extensible=payload.is_extensible,
        description=payload.description,
        published_by=principal.subject_id,
    )
    # Republishing identical content is a no-op and reports 200.
    if not created:
        response.status_code = 200
    return success_response(request=request, data=platform_service.serialize_snapshot(row))


@router.get("/version", response_model=SuccessEnvelope[PlatformVersionResponse])
async def get_platform_version(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    marker = await get_current_version(db, principal.tenant_id)
    return success_response(request=request, data=marker_state(marker))


class ChangedResourceResponse(BaseModel):
    config_type: str
    resource_key: str


@router.get("/changes", response_model=SuccessEnvelope[list[ChangedResourceResponse]])
async def list_changed_resources(
    request: Request,
    from_version: str = Query(min_length=1, max_length=64),
    to_version: str = Query(min_length=1, max_length=64),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Release preview: which resources differ between two published versions.
    keys = await platform_service.list_resource_keys_changed_between(
        db,
        from_version=from_version,
        to_version=to_version,
    )
    return success_response(
        request=request,
        data=[{"config_type": config_type, "resource_key": resource_key} for config_type, resource_key in keys],
    )
