from __future__ import annotations

from datetime import datetime
from typing import Any

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
from upgradeguard.services import history as history_service
from upgradeguard.services.history import serialize_entry


router = APIRouter(prefix="/history", tags=["history"], responses=DEFAULT_ERROR_RESPONSES)


class HistoryEntryResponse(BaseModel):
    id: str
    tenant_id: str
    entity_type: str
    entity_id: str
    config_type: str | None = None
    resource_key: str | None = None
    change_type: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    diff: list[dict[str, Any]] | None = None
    change_reason: str | None = None
    change_source: str
    performed_by: str | None = None
    rollback_of: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: str | None = None


class RollbackRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)

    model_config = {"extra": "forbid"}


@router.get("", response_model=SuccessEnvelope[list[HistoryEntryResponse]])
async def list_history(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    config_type: str | None = Query(default=None),
    resource_key: str | None = Query(default=None),
    change_type: str | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = get_settings()
    page_size = min(limit or settings.default_page_size, settings.max_page_size)
    rows = await history_service.list_history(
        db,
        tenant_id=principal.tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        config_type=config_type,
        resource_key=resource_key,
        change_type=change_type,
        created_from=created_from,
        created_to=created_to,
        offset=offset,
        limit=page_size,
    )
    return success_response(
        request=request,
        data=[serialize_entry(row) for row in rows],
        page=page_meta(offset=offset, limit=page_size, returned=len(rows)),
    )


@router.get("/{entry_id}", response_model=SuccessEnvelope[HistoryEntryResponse])
async def get_history_entry(
    entry_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await history_service.get_history_entry(db, tenant_id=principal.tenant_id, entry_id=entry_id)
    return success_response(request=request, data=serialize_entry(row))


@router.post(
    "/{entry_id}/rollback",
    status_code=201,
    response_model=SuccessEnvelope[HistoryEntryResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def rollback_history_entry(
    entry_id: str,
    request: Request,
    payload: RollbackRequest | None = None,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The response is the new rollback entry; the original entry stays untouched.
    row = await history_service.rollback(
        db,
        actor=actor_from_principal(principal, request),
        history_id=entry_id,
        reason=payload.reason if payload is not None else None,
    )
    return success_response(request=request, data=serialize_entry(row))
