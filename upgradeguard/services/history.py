from __future__ import annotations

from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.errors import NotFoundError, StateError, ValidationError
from upgradeguard.domain.actor import CHANGE_SOURCE_ROLLBACK, ActorContext
from upgradeguard.domain.models import ConfigChangeHistory
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import history as history_repo


logger = logging.getLogger(__name__)

ENTITY_CUSTOMIZATION = "customization"
ENTITY_UPGRADE_IMPACT = "upgrade_impact"
ENTITY_PLATFORM_VERSION = "platform_version"
ENTITY_TYPES = (ENTITY_CUSTOMIZATION, ENTITY_UPGRADE_IMPACT, ENTITY_PLATFORM_VERSION)

CHANGE_CREATE = "create"
CHANGE_UPDATE = "update"
CHANGE_DELETE = "delete"
CHANGE_ROLLBACK = "rollback"
CHANGE_TYPES = (CHANGE_CREATE, CHANGE_UPDATE, CHANGE_DELETE, CHANGE_ROLLBACK)


def serialize_entry(row: ConfigChangeHistory) -> dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "config_type": row.config_type,
        "resource_key": row.resource_key,
        "change_type": row.change_type,
        "before_state": row.before_state,
        "after_state": row.after_state,
        "diff": row.diff,
        "change_reason": row.change_reason,
        "change_source": row.change_source,
        "performed_by": row.performed_by,
        "rollback_of": row.rollback_of,
        "metadata": row.metadata_json,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def record_change(
    session: AsyncSession,
    *,
    actor: ActorContext,
    entity_type: str,
    entity_id: str,
    change_type: str,
    before_state: dict[str, Any] | None,
    after_state: dict[str, Any] | None,
    config_type: str | None = None,
    resource_key: str | None = None,
    diff: list[dict[str, Any]] | None = None,
    change_reason: str | None = None,
    rollback_of: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ConfigChangeHistory:
    # Runs inside the caller's transaction so the entry lands with the change it describes.
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unsupported history entity type '{entity_type}'")
    if change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unsupported history change type '{change_type}'")
    entry = ConfigChangeHistory(
        id=uuid4().hex,
        tenant_id=actor.tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        config_type=config_type,
        resource_key=resource_key,
        change_type=change_type,
        before_state=before_state,
        after_state=after_state,
        diff=diff,
        change_reason=change_reason,
        change_source=actor.source,
        performed_by=actor.actor_id,
        rollback_of=rollback_of,
        metadata_json=metadata,
    )
    session.add(entry)
    return entry


async def list_history(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    config_type: str | None = None,
    resource_key: str | None = None,
    change_type: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ConfigChangeHistory]:
    return await history_repo.list_entries(
        session,
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        config_type=config_type,
        resource_key=resource_key,
        change_type=change_type,
        created_from=created_from,
        created_to=created_to,
        offset=offset,
        limit=limit,
    )


async def get_history_entry(session: AsyncSession, *, tenant_id: str, entry_id: str) -> ConfigChangeHistory:
    entry = await history_repo.get_entry(session, tenant_id=tenant_id, entry_id=entry_id)
    if entry is None:
        raise NotFoundError("History entry not found", details={"history_id": entry_id})
    return entry


async def rollback(
    session: AsyncSession,
    *,
    actor: ActorContext,
    history_id: str,
    reason: str | None = None,
    commit: bool = True,
) -> ConfigChangeHistory:
    """Reproduce an entry's before-state as a new change and return the rollback entry."""
    rollback_actor = actor.with_source(CHANGE_SOURCE_ROLLBACK)
    async with unit_of_work(session, commit=commit):
        entry = await get_history_entry(session, tenant_id=actor.tenant_id, entry_id=history_id)
        result = await _rollback_entry(session, actor=rollback_actor, entry=entry, reason=reason)
    logger.info(
        "history_rolled_back tenant_id=%s history_id=%s entity_type=%s entity_id=%s rollback_id=%s",
        actor.tenant_id,
        history_id,
        entry.entity_type,
        entry.entity_id,
        result.id,
    )
    return result


async def _rollback_entry(
    session: AsyncSession,
    *,
    actor: ActorContext,
    entry: ConfigChangeHistory,
    reason: str | None,
) -> ConfigChangeHistory:
    existing = await history_repo.find_rollback_of(session, tenant_id=actor.tenant_id, entry_id=entry.id)
    if existing is not None:
        raise StateError(
            "History entry has already been rolled back",
            details={"history_id": entry.id, "rollback_id": existing.id},
        )
    if entry.entity_type == ENTITY_CUSTOMIZATION:
        return await _rollback_customization(session, actor=actor, entry=entry, reason=reason)
    if entry.entity_type == ENTITY_UPGRADE_IMPACT:
        return await _rollback_impact(session, actor=actor, entry=entry, reason=reason)
    if entry.entity_type == ENTITY_PLATFORM_VERSION:
        return await _rollback_platform_version(session, actor=actor, entry=entry, reason=reason)
    raise ValidationError(f"Cannot roll back entity type '{entry.entity_type}'")


async def _rollback_customization(
    session: AsyncSession,
    *,
    actor: ActorContext,
    entry: ConfigChangeHistory,
    reason: str | None,
) -> ConfigChangeHistory:
    from upgradeguard.services import customizations as customization_service

    restored, before_state, after_state, body_diff = await customization_service.restore_state(
        session,
        actor=actor,
        config_type=entry.config_type or "",
        resource_key=entry.resource_key or "",
        expected_state=entry.after_state,
        target_state=entry.before_state,
    )
    return await record_change(
        session,
        actor=actor,
        entity_type=ENTITY_CUSTOMIZATION,
        entity_id=restored.id if restored is not None else entry.entity_id,
        change_type=CHANGE_ROLLBACK,
        before_state=before_state,
        after_state=after_state,
        config_type=entry.config_type,
        resource_key=entry.resource_key,
        diff=body_diff,
        change_reason=reason,
        rollback_of=entry.id,
    )


async def _rollback_impact(
    session: AsyncSession,
    *,
    actor: ActorContext,
    entry: ConfigChangeHistory,
    reason: str | None,
) -> ConfigChangeHistory:
    from upgradeguard.services import resolution as resolution_service

    linked_rollback_id: str | None = None
    linked_id = (entry.metadata_json or {}).get("customization_history_id")
    if linked_id:
        linked = await history_repo.get_entry(session, tenant_id=actor.tenant_id, entry_id=linked_id)
        if linked is not None:
            if await history_repo.find_rollback_of(session, tenant_id=actor.tenant_id, entry_id=linked.id):
                logger.info(
                    "history_linked_already_rolled_back tenant_id=%s history_id=%s linked_id=%s",
                    actor.tenant_id,
                    entry.id,
                    linked.id,
                )
            else:
                linked_rollback = await _rollback_customization(
                    session,
                    actor=actor,
                    entry=linked,
                    reason=reason,
                )
                linked_rollback_id = linked_rollback.id

    before_state, after_state = await resolution_service.restore_impact_state(
        session,
        tenant_id=actor.tenant_id,
        impact_id=entry.entity_id,
        expected_state=entry.after_state,
        target_state=entry.before_state,
    )
    return await record_change(
        session,
        actor=actor,
        entity_type=ENTITY_UPGRADE_IMPACT,
        entity_id=entry.entity_id,
        change_type=CHANGE_ROLLBACK,
        before_state=before_state,
        after_state=after_state,
        config_type=entry.config_type,
        resource_key=entry.resource_key,
        change_reason=reason,
        rollback_of=entry.id,
        metadata={"customization_history_id": linked_rollback_id},
    )


async def _rollback_platform_version(
    session: AsyncSession,
    *,
    actor: ActorContext,
    entry: ConfigChangeHistory,
    reason: str | None,
) -> ConfigChangeHistory:
    from upgradeguard.services import resolution as resolution_service

    if not entry.before_state or not entry.after_state:
        raise StateError("Platform version entry has no state to restore", details={"history_id": entry.id})
    before_state, after_state = await resolution_service.restore_marker_state(
        session,
        tenant_id=actor.tenant_id,
        expected_state=entry.after_state,
        target_state=entry.before_state,
    )
    return await record_change(
        session,
        actor=actor,
        entity_type=ENTITY_PLATFORM_VERSION,
        entity_id=entry.entity_id,
        change_type=CHANGE_ROLLBACK,
        before_state=before_state,
        after_state=after_state,
        change_reason=reason,
        rollback_of=entry.id,
        metadata=dict(entry.metadata_json or {}),
    )
