from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.apps.api.deps import (
    Principal,
    actor_from_principal,
    get_db,
    reject_tenant_id_in_body,
    require_role,
)
from upgradeguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from upgradeguard.apps.api.response import SuccessEnvelope, page_meta, success_response
from upgradeguard.core.config import get_settings
from upgradeguard.merge.canonical import MISSING
from upgradeguard.services import customizations as customization_service
from upgradeguard.services.customizations import customization_state


router = APIRouter(prefix="/customizations", tags=["customizations"], responses=DEFAULT_ERROR_RESPONSES)


class CustomizationResponse(BaseModel):
    id: str
    tenant_id: str
    config_type: str
    resource_key: str
    kind: str
    base_platform_version: str | None = None
    base_checksum: str | None = None
    body: Any = None
    diff_from_base: list[dict[str, Any]] | None = None
    description: str | None = None
    is_active: bool
    version: int
    previous_version_id: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class CompareResponse(BaseModel):
    customization: CustomizationResponse
    platform_version: str
    platform_config: dict[str, Any] | None = None
    diff: list[dict[str, Any]]


class EffectiveValueResponse(BaseModel):
    source: str
    value: Any = None
    customization_id: str | None = None
    customization_version: int | None = None
    platform_version: str


class CustomizationCreateRequest(BaseModel):
    config_type: str = Field(min_length=1, max_length=128)
    resource_key: str = Field(min_length=1, max_length=256)
    kind: Literal["override", "extend", "new"]
    body: Any
    base_platform_version: str | None = Field(default=None, max_length=64)
    description: str | None = Field(default=None, max_length=2000)

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {"extra": "forbid"}


class PatchOperation(BaseModel):
    op: Literal["add", "remove", "replace"]
    path: str
    value: Any = None

    model_config = {"extra": "forbid"}


class CustomizationUpdateRequest(BaseModel):
    expected_version: int = Field(ge=1)
    body: Any = None
    operations: list[PatchOperation] | None = None
    base_platform_version: str | None = Field(default=None, max_length=64)
    description: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


def _page_limit(limit: int | None) -> int:
    settings = get_settings()
    if limit is None:
        return settings.default_page_size
    return max(1, min(limit, settings.max_page_size))


def _operations_payload(operations: list[PatchOperation]) -> list[dict[str, Any]]:
    # Keep the value key only where the operation carries one.
    payload: list[dict[str, Any]] = []
    for operation in operations:
        item: dict[str, Any] = {"op": operation.op, "path": operation.path}
        if operation.op != "remove":
            item["value"] = operation.value
        payload.append(item)
    return payload


@router.get("", response_model=SuccessEnvelope[list[CustomizationResponse]])
async def list_customizations(
    request: Request,
    config_type: str | None = Query(default=None),
    resource_key: str | None = Query(default=None),
    kind: str | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Bind tenant scope from the authenticated principal to prevent spoofing.
    page_size = _page_limit(limit)
    rows = await customization_service.list_customizations(
        db,
        tenant_id=principal.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
        kind=kind,
        is_active=None if include_inactive else True,
        offset=offset,
        limit=page_size,
    )
    return success_response(
        request=request,
        data=[customization_state(row) for row in rows],
        page=page_meta(offset=offset, limit=page_size, returned=len(rows)),
    )


# Static paths are declared before /{customization_id} so they are not captured as ids.
@router.get("/history", response_model=SuccessEnvelope[list[CustomizationResponse]])
async def get_customization_history(
    request: Request,
    config_type: str = Query(min_length=1),
    resource_key: str = Query(min_length=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await customization_service.get_version_history(
        db,
        tenant_id=principal.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )
    return success_response(request=request, data=[customization_state(row) for row in rows])


@router.get("/effective", response_model=SuccessEnvelope[EffectiveValueResponse])
async def get_effective_value(
    request: Request,
    config_type: str = Query(min_length=1),
    resource_key: str = Query(min_length=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = await customization_service.resolve_effective(
        db,
        tenant_id=principal.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )
    return success_response(request=request, data=payload)


@router.get("/{customization_id}", response_model=SuccessEnvelope[CustomizationResponse])
async def get_customization(
    customization_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await customization_service.get_customization(
        db,
        tenant_id=principal.tenant_id,
        customization_id=customization_id,
    )
    return success_response(request=request, data=customization_state(row))


@router.get("/{customization_id}/versions", response_model=SuccessEnvelope[list[CustomizationResponse]])
async def get_customization_versions(
    customization_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    chain = await customization_service.get_version_chain(
        db,
        tenant_id=principal.tenant_id,
        customization_id=customization_id,
    )
    return success_response(request=request, data=[customization_state(row) for row in chain])


@router.get("/{customization_id}/compare", response_model=SuccessEnvelope[CompareResponse])
async def compare_customization(
    customization_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = await customization_service.compare_with_platform(
        db,
        tenant_id=principal.tenant_id,
        customization_id=customization_id,
    )
    return success_response(request=request, data=payload)


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[CustomizationResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def create_customization(
    payload: CustomizationCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await customization_service.create_customization(
        db,
        actor=actor_from_principal(principal, request),
        config_type=payload.config_type,
        resource_key=payload.resource_key,
        kind=payload.kind,
        body=payload.body,
        base_platform_version=payload.base_platform_version,
        description=payload.description,
    )
    return success_response(request=request, data=customization_state(row))


@router.patch(
    "/{customization_id}",
    response_model=SuccessEnvelope[CustomizationResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def update_customization(
    customization_id: str,
    payload: CustomizationUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # An explicit null body is a value; an omitted body means "not replacing".
    body = payload.body if "body" in payload.model_fields_set else MISSING
    operations = _operations_payload(payload.operations) if payload.operations is not None else None
    row = await customization_service.update_customization(
        db,
        actor=actor_from_principal(principal, request),
        customization_id=customization_id,
        expected_version=payload.expected_version,
        body=body,
        operations=operations,
        base_platform_version=payload.base_platform_version,
        description=payload.description,
    )
    return success_response(request=request, data=customization_state(row))


@router.delete("/{customization_id}", response_model=SuccessEnvelope[CustomizationResponse])
async def delete_customization(
    customization_id: str,
    request: Request,
    expected_version: int | None = Query(default=None, ge=1),
    reason: str | None = Query(default=None, max_length=2000),
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await customization_service.deactivate_customization(
        db,
        actor=actor_from_principal(principal, request),
        customization_id=customization_id,
        expected_version=expected_version,
        reason=reason,
    )
    return success_response(request=request, data=customization_state(row))
