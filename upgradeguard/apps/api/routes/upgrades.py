from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response
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
from upgradeguard.core.errors import ValidationError
from upgradeguard.merge.canonical import MISSING
from upgradeguard.services import impact_analysis as analysis_service
from upgradeguard.services import manifests as manifest_service
from upgradeguard.services import resolution as resolution_service
from upgradeguard.services.impact_analysis import impact_state
from upgradeguard.services.manifests import serialize_manifest
from upgradeguard.services.upgrade_summary import get_upgrade_context, summarize_impacts


router = APIRouter(prefix="/upgrades", tags=["upgrades"], responses=DEFAULT_ERROR_RESPONSES)

ResolutionChoice = Literal["keep_tenant", "use_platform", "custom_merge", "auto_merge"]


class ManifestResponse(BaseModel):
    id: str
    from_version: str
    to_version: str
    config_changes: list[dict[str, Any]]
    checksum: str
    description: str | None = None
    upgrade_type: str
    is_mandatory: bool
    release_date: str | None = None
    release_notes: str | None = None
    deprecations: list[dict[str, Any]] | None = None
    created_by: str | None = None
    created_at: str | None = None


class ImpactResponse(BaseModel):
    id: str
    tenant_id: str
    upgrade_manifest_id: str
    customization_id: str | None = None
    config_type: str
    resource_key: str
    impact_type: str
    impact_severity: str
    description: str | None = None
    current_tenant_value: Any = None
    current_platform_value: Any = None
    new_platform_value: Any = None
    platform_diff: list[dict[str, Any]] | None = None
    conflicts: list[dict[str, Any]] | None = None
    suggested_resolution: str | None = None
    preview_merged_value: Any = None
    status: str
    resolution_choice: str | None = None
    custom_resolution_value: Any = None
    resolution_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: str | None = None
    auto_resolved: bool
    integrity_error: str | None = None
    row_version: int
    analyzed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ImpactSummaryResponse(BaseModel):
    total: int
    by_severity: dict[str, int]
    by_type: dict[str, int]
    by_status: dict[str, int]
    blocking: list[str]
    auto_resolvable: int
    can_apply: bool


class AnalysisResponse(BaseModel):
    manifest: ManifestResponse
    impacts: list[ImpactResponse]
    summary: ImpactSummaryResponse


class ImpactListResponse(BaseModel):
    impacts: list[ImpactResponse]
    summary: ImpactSummaryResponse


class PreviewResponse(BaseModel):
    impact_id: str
    strategy: str
    allowed: bool
    value: Any = None
    diff_from_tenant: list[dict[str, Any]]
    diff_from_platform: list[dict[str, Any]]


class AutoResolveFailure(BaseModel):
    impact_id: str
    code: str
    message: str


class AutoResolveBatchResponse(BaseModel):
    resolved: list[str]
    failed: list[AutoResolveFailure]


class ApplyResponse(BaseModel):
    tenant_id: str
    manifest_id: str
    previous_version: str
    current_version: str
    history_id: str
    marker: dict[str, Any]


class AvailableManifest(BaseModel):
    id: str
    from_version: str
    to_version: str
    upgrade_type: str
    is_mandatory: bool


class ImpactHighlight(BaseModel):
    impact_id: str
    config_type: str
    resource_key: str
    impact_type: str
    severity: str
    description: str | None = None
    tenant_value: Any = None
    new_platform_value: Any = None
    suggested_resolution: str | None = None


class NewFeature(BaseModel):
    code: str
    name: str
    config_type: str
    description: str


class DeprecationNotice(BaseModel):
    code: str | None = None
    resource: str | None = None
    message: str | None = None
    removal_version: str | None = None
    replacement: str | None = None


class ContextImpactSummary(ImpactSummaryResponse):
    conflicts: list[ImpactHighlight]
    new_features: list[NewFeature]
    deprecations: list[DeprecationNotice]


class CustomizationItem(BaseModel):
    id: str
    config_type: str
    resource_key: str
    kind: str
    version: int
    description: str | None = None
    base_platform_version: str | None = None
    modified_by: str | None = None
    last_modified: str | None = None


class CustomizationsSummary(BaseModel):
    total: int
    by_kind: dict[str, int]
    by_config_type: dict[str, int]
    items: list[CustomizationItem]


class ActionItem(BaseModel):
    id: str
    title: str
    description: str
    priority: Literal["required", "recommended", "optional"]


class UpgradeGuidance(BaseModel):
    phase: Literal["pre", "during", "post"]
    summary: str
    key_points: list[str]
    action_items: list[ActionItem]
    warnings: list[str]


class UpgradeContextResponse(BaseModel):
    tenant_id: str
    current_version: str
    previous_version: str | None = None
    last_manifest_id: str | None = None
    last_upgrade_at: str | None = None
    customization_count: int
    pending_impacts: int
    available_manifests: list[AvailableManifest]
    manifest_id: str | None = None
    impact_summary: ContextImpactSummary
    customizations: CustomizationsSummary
    guidance: UpgradeGuidance


class ManifestCreateRequest(BaseModel):
    from_version: str = Field(min_length=1, max_length=64)
    to_version: str = Field(min_length=1, max_length=64)
    # Either list the changes explicitly or derive them from published snapshots.
    config_changes: list[dict[str, Any]] | None = None
    build_from_snapshots: bool = False
    description: str | None = Field(default=None, max_length=2000)
    upgrade_type: Literal["major", "minor", "patch"] = "minor"
    is_mandatory: bool = False
    release_date: datetime | None = None
    release_notes: str | None = None
    deprecations: list[dict[str, Any]] | None = None

    model_config = {"extra": "forbid"}


class AnalyzeRequest(BaseModel):
    force: bool = False

    model_config = {"extra": "forbid"}


class PreviewRequest(BaseModel):
    strategy: ResolutionChoice
    custom_value: Any = None

    model_config = {"extra": "forbid"}


class ResolveRequest(BaseModel):
    choice: ResolutionChoice
    custom_value: Any = None
    notes: str | None = Field(default=None, max_length=2000)
    expected_row_version: int | None = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}


class AutoResolveRequest(BaseModel):
    expected_row_version: int | None = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}


class AcknowledgeRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)
    expected_row_version: int | None = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}


def _custom_value(payload: PreviewRequest | ResolveRequest) -> Any:
    return payload.custom_value if "custom_value" in payload.model_fields_set else MISSING


@router.get("/manifests", response_model=SuccessEnvelope[list[ManifestResponse]])
async def list_manifests(
    request: Request,
    from_version: str | None = Query(default=None),
    to_version: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = get_settings()
    page_size = min(limit or settings.default_page_size, settings.max_page_size)
    rows = await manifest_service.list_manifests(
        db,
        from_version=from_version,
        to_version=to_version,
        offset=offset,
        limit=page_size,
    )
    return success_response(
        request=request,
        data=[serialize_manifest(row) for row in rows],
        page=page_meta(offset=offset, limit=page_size, returned=len(rows)),
    )


@router.post(
    "/manifests",
    status_code=201,
    response_model=SuccessEnvelope[ManifestResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def create_manifest(
    payload: ManifestCreateRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.build_from_snapshots == (payload.config_changes is not None):
        raise ValidationError("Provide config_changes or set build_from_snapshots, not both")
    common = {
        "from_version": payload.from_version,
        "to_version": payload.to_version,
        "description": payload.description,
        "upgrade_type": payload.upgrade_type,
        "is_mandatory": payload.is_mandatory,
        "release_date": payload.release_date,
        "release_notes": payload.release_notes,
        "deprecations": payload.deprecations,
        "created_by": principal.subject_id,
    }
    if payload.build_from_snapshots:
        row, created = await manifest_service.build_manifest(db, **common)
    else:
        row, created = await manifest_service.create_manifest(
            db,
            config_changes=payload.config_changes or [],
            **common,
        )
    if not created:
        response.status_code = 200
    return success_response(request=request, data=serialize_manifest(row))


@router.get("/manifests/{manifest_id}", response_model=SuccessEnvelope[ManifestResponse])
async def get_manifest(
    manifest_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await manifest_service.get_manifest(db, manifest_id)
    return success_response(request=request, data=serialize_manifest(row))


@router.post(
    "/manifests/{manifest_id}/analyze",
    response_model=SuccessEnvelope[AnalysisResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def analyze_manifest(
    manifest_id: str,
    request: Request,
    payload: AnalyzeRequest | None = None,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    force = payload.force if payload is not None else False
    impacts = await analysis_service.analyze(
        db,
        actor=actor_from_principal(principal, request),
        manifest_id=manifest_id,
        force=force,
    )
    manifest = await manifest_service.get_manifest(db, manifest_id)
    return success_response(
        request=request,
        data={
            "manifest": serialize_manifest(manifest),
            "impacts": [impact_state(row) for row in impacts],
            "summary": summarize_impacts(impacts),
        },
    )


@router.get("/manifests/{manifest_id}/impacts", response_model=SuccessEnvelope[ImpactListResponse])
async def list_manifest_impacts(
    manifest_id: str,
    request: Request,
    status: str | None = Query(default=None),
    impact_type: str | None = Query(default=None),
    severity: str | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await manifest_service.get_manifest(db, manifest_id)
    impacts = await analysis_service.list_impacts(
        db,
        tenant_id=principal.tenant_id,
        manifest_id=manifest_id,
        status=status,
        impact_type=impact_type,
        severity=severity,
    )
    return success_response(
        request=request,
        data={
            "impacts": [impact_state(row) for row in impacts],
            "summary": summarize_impacts(impacts),
        },
    )


@router.post(
    "/manifests/{manifest_id}/auto-resolve",
    response_model=SuccessEnvelope[AutoResolveBatchResponse],
)
async def auto_resolve_manifest(
    manifest_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await manifest_service.get_manifest(db, manifest_id)
    result = await resolution_service.auto_resolve_all(
        db,
        actor=actor_from_principal(principal, request),
        manifest_id=manifest_id,
    )
    return success_response(request=request, data=result)


@router.post("/manifests/{manifest_id}/apply", response_model=SuccessEnvelope[ApplyResponse])
async def apply_manifest(
    manifest_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await resolution_service.apply_upgrade(
        db,
        actor=actor_from_principal(principal, request),
        manifest_id=manifest_id,
    )
    return success_response(request=request, data=result)


@router.get("/impacts/{impact_id}", response_model=SuccessEnvelope[ImpactResponse])
async def get_impact(
    impact_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await analysis_service.get_impact(db, tenant_id=principal.tenant_id, impact_id=impact_id)
    return success_response(request=request, data=impact_state(row))


@router.post(
    "/impacts/{impact_id}/preview",
    response_model=SuccessEnvelope[PreviewResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def preview_impact(
    impact_id: str,
    payload: PreviewRequest,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await resolution_service.preview_merge(
        db,
        tenant_id=principal.tenant_id,
        impact_id=impact_id,
        strategy=payload.strategy,
        custom_value=_custom_value(payload),
    )
    return success_response(request=request, data=result)


@router.post(
    "/impacts/{impact_id}/resolve",
    response_model=SuccessEnvelope[ImpactResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def resolve_impact(
    impact_id: str,
    payload: ResolveRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await resolution_service.resolve_impact(
        db,
        actor=actor_from_principal(principal, request),
        impact_id=impact_id,
        choice=payload.choice,
        custom_value=_custom_value(payload),
        notes=payload.notes,
        expected_row_version=payload.expected_row_version,
    )
    return success_response(request=request, data=impact_state(row))


@router.post(
    "/impacts/{impact_id}/auto-resolve",
    response_model=SuccessEnvelope[ImpactResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def auto_resolve_impact(
    impact_id: str,
    request: Request,
    payload: AutoResolveRequest | None = None,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await resolution_service.auto_resolve(
        db,
        actor=actor_from_principal(principal, request),
        impact_id=impact_id,
        expected_row_version=payload.expected_row_version if payload is not None else None,
    )
    return success_response(request=request, data=impact_state(row))


@router.post(
    "/impacts/{impact_id}/acknowledge",
    response_model=SuccessEnvelope[ImpactResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def acknowledge_impact(
    impact_id: str,
    request: Request,
    payload: AcknowledgeRequest | None = None,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await resolution_service.acknowledge(
        db,
        actor=actor_from_principal(principal, request),
        impact_id=impact_id,
        notes=payload.notes if payload is not None else None,
        expected_row_version=payload.expected_row_version if payload is not None else None,
    )
    return success_response(request=request, data=impact_state(row))


@router.get("/context", response_model=SuccessEnvelope[UpgradeContextResponse])
async def upgrade_context(
    request: Request,
    manifest_id: str | None = Query(default=None),
    phase: Literal["pre", "during", "post"] | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = await get_upgrade_context(db, principal.tenant_id, manifest_id=manifest_id, phase=phase)
    return success_response(request=request, data=payload)
