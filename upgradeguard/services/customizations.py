from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.errors import ConflictError, NotFoundError, ValidationError
from upgradeguard.domain.actor import ActorContext
from upgradeguard.domain.models import ConfigChangeHistory, PlatformConfigSnapshot, TenantCustomization
from upgradeguard.merge.canonical import MISSING
from upgradeguard.merge.differ import apply_patch, diff, ops_from_json, ops_to_json
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import customizations as customizations_repo
from upgradeguard.services import history as history_service
from upgradeguard.services import platform_configs as platform_service
from upgradeguard.services.governance import GovernanceService, get_governance
from upgradeguard.services.upgrade_summary import current_version_value


logger = logging.getLogger(__name__)

KIND_OVERRIDE = "override"
KIND_EXTEND = "extend"
KIND_NEW = "new"
CUSTOMIZATION_KINDS = (KIND_OVERRIDE, KIND_EXTEND, KIND_NEW)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def customization_state(row: TenantCustomization) -> dict[str, Any]:
    # JSON-safe snapshot of a row; also the before/after payload of history entries.
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "config_type": row.config_type,
        "resource_key": row.resource_key,
        "kind": row.kind,
        "base_platform_version": row.base_platform_version,
        "base_checksum": row.base_checksum,
        "body": row.body,
        "diff_from_base": row.diff_from_base,
        "description": row.description,
        "is_active": row.is_active,
        "version": row.version,
        "previous_version_id": row.previous_version_id,
        "created_by": row.created_by,
        "updated_by": row.updated_by,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _body_or_missing(value: Any) -> Any:
    return MISSING if value is None else value


def _state_body(state: dict[str, Any] | None) -> Any:
    # Effective body a state represents; an inactive row means no tenant value.
    if not state or not state.get("is_active"):
        return MISSING
    return _body_or_missing(state.get("body"))


async def _base_snapshot(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    base_version: str,
) -> PlatformConfigSnapshot:
    snapshot = await platform_service.resolve_snapshot(
        session,
        config_type=config_type,
        resource_key=resource_key,
        as_of_version=base_version,
    )
    if snapshot is None or platform_service.live_body(snapshot) is None:
        raise ValidationError(
            "No platform configuration exists for this resource at the base version",
            details={
                "config_type": config_type,
                "resource_key": resource_key,
                "base_platform_version": base_version,
            },
        )
    return snapshot


async def write_version(
    session: AsyncSession,
    *,
    actor: ActorContext,
    config_type: str,
    resource_key: str,
    kind: str,
    body: Any,
    base_platform_version: str | None,
    base_checksum: str | None,
    diff_from_base: list[dict[str, Any]] | None,
    description: str | None,
    replaces: TenantCustomization | None,
) -> TenantCustomization:
    """Insert the next version of a scope, retiring ``replaces`` first."""
    if replaces is not None:
        # Retire before insert; the one-active-row index rejects the reverse order.
        retired = await customizations_repo.deactivate_if_active(
            session,
            tenant_id=actor.tenant_id,
            customization_id=replaces.id,
            actor_id=actor.actor_id,
        )
        if not retired:
            raise ConflictError(
                "Customization was modified concurrently",
                current_version=replaces.version,
            )
    latest = await customizations_repo.get_latest(
        session,
        tenant_id=actor.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )
    row = TenantCustomization(
        id=uuid4().hex,
        tenant_id=actor.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
        kind=kind,
        base_platform_version=base_platform_version,
        base_checksum=base_checksum,
        body=body,
        diff_from_base=diff_from_base,
        description=description,
        is_active=True,
        version=(latest.version + 1) if latest is not None else 1,
        previous_version_id=latest.id if latest is not None else None,
        created_by=actor.actor_id,
        updated_by=actor.actor_id,
    )
    session.add(row)
    await session.flush()
    return row


async def create_customization(
    session: AsyncSession,
    *,
    actor: ActorContext,
    config_type: str,
    resource_key: str,
    kind: str,
    body: Any,
    base_platform_version: str | None = None,
    description: str | None = None,
    governance: GovernanceService | None = None,
    commit: bool = True,
) -> TenantCustomization:
    if kind not in CUSTOMIZATION_KINDS:
        raise ValidationError(f"Unsupported customization kind '{kind}'")
    if not config_type or not resource_key:
        raise ValidationError("config_type and resource_key are required")
    governance = governance or get_governance()

    async with unit_of_work(session, commit=commit):
        existing = await customizations_repo.get_active(
            session,
            tenant_id=actor.tenant_id,
            config_type=config_type,
            resource_key=resource_key,
        )
        if existing is not None:
            raise ConflictError(
                "An active customization already exists for this resource",
                current_version=existing.version,
                details={"customization_id": existing.id},
            )

        tenant_version = await current_version_value(session, actor.tenant_id)
        if kind == KIND_NEW:
            if base_platform_version:
                raise ValidationError("Customizations of kind 'new' have no platform base")
            platform_snapshot = await platform_service.resolve_snapshot(
                session,
                config_type=config_type,
                resource_key=resource_key,
                as_of_version=tenant_version,
            )
            if platform_service.live_body(platform_snapshot) is not None:
                raise ValidationError(
                    "Resource exists on the platform; customize it with kind 'override' or 'extend'",
                    details={"config_type": config_type, "resource_key": resource_key},
                )
            normalized = governance.validate_body(config_type=config_type, resource_key=resource_key, body=body)
            base_version = None
            base_checksum = None
            diff_from_base = None
        else:
            base_version = base_platform_version or tenant_version
            snapshot = await _base_snapshot(
                session,
                config_type=config_type,
                resource_key=resource_key,
                base_version=base_version,
            )
            if kind == KIND_EXTEND and not governance.is_extensible(
                config_type=config_type,
                resource_key=resource_key,
                snapshot=snapshot,
            ):
                raise ValidationError(
                    "Platform configuration is not extensible",
                    details={"config_type": config_type, "resource_key": resource_key},
                )
            normalized = governance.validate_body(
                config_type=config_type,
                resource_key=resource_key,
                body=body,
                platform_body=snapshot.body,
            )
            base_checksum = snapshot.checksum
            diff_from_base = ops_to_json(diff(snapshot.body, normalized))

        row = await write_version(
            session,
            actor=actor,
            config_type=config_type,
            resource_key=resource_key,
            kind=kind,
            body=normalized,
            base_platform_version=base_version,
            base_checksum=base_checksum,
            diff_from_base=diff_from_base,
            description=description,
            replaces=None,
        )
        await history_service.record_change(
            session,
            actor=actor,
            entity_type=history_service.ENTITY_CUSTOMIZATION,
            entity_id=row.id,
            change_type=history_service.CHANGE_CREATE,
            before_state=None,
            after_state=customization_state(row),
            config_type=config_type,
            resource_key=resource_key,
            diff=ops_to_json(diff(MISSING, normalized)),
        )

    logger.info(
        "customization_created tenant_id=%s customization_id=%s config_type=%s resource_key=%s kind=%s version=%s",
        actor.tenant_id,
        row.id,
        config_type,
        resource_key,
        kind,
        row.version,
    )
    return row


async def _require_active(
    session: AsyncSession,
    *,
    tenant_id: str,
    customization_id: str,
    expected_version: int | None,
) -> TenantCustomization:
    row = await get_customization(session, tenant_id=tenant_id, customization_id=customization_id)
    if not row.is_active:
        latest = await customizations_repo.get_latest(
            session,
            tenant_id=tenant_id,
            config_type=row.config_type,
            resource_key=row.resource_key,
        )
        raise ConflictError(
            "Customization version is no longer active",
            current_version=latest.version if latest is not None else row.version,
            details={"customization_id": row.id},
        )
    if expected_version is not None and expected_version != row.version:
        raise ConflictError(
            "Customization was modified since it was read",
            current_version=row.version,
            details={"customization_id": row.id, "expected_version": expected_version},
        )
    return row


async def rebase_version(
    session: AsyncSession,
    *,
    actor: ActorContext,
    current: TenantCustomization,
    body: Any,
    base_platform_version: str | None,
    description: str | None,
    governance: GovernanceService | None = None,
) -> tuple[TenantCustomization, ConfigChangeHistory]:
    """Write ``body`` as the next version of ``current`` (no commit)."""
    governance = governance or get_governance()
    before_state = customization_state(current)
    if current.kind == KIND_NEW:
        if base_platform_version and base_platform_version != current.base_platform_version:
            raise ValidationError("Customizations of kind 'new' have no platform base")
        normalized = governance.validate_body(
            config_type=current.config_type,
            resource_key=current.resource_key,
            body=body,
        )
        base_version = None
        base_checksum = None
        diff_from_base = None
    else:
        base_version = base_platform_version or current.base_platform_version
        if not base_version:
            base_version = await current_version_value(session, actor.tenant_id)
        snapshot = await _base_snapshot(
            session,
            config_type=current.config_type,
            resource_key=current.resource_key,
            base_version=base_version,
        )
        if current.kind == KIND_EXTEND and not governance.is_extensible(
            config_type=current.config_type,
            resource_key=current.resource_key,
            snapshot=snapshot,
        ):
            raise ValidationError(
                "Platform configuration is not extensible",
                details={"config_type": current.config_type, "resource_key": current.resource_key},
            )
        normalized = governance.validate_body(
            config_type=current.config_type,
            resource_key=current.resource_key,
            body=body,
            platform_body=snapshot.body,
        )
        base_checksum = snapshot.checksum
        diff_from_base = ops_to_json(diff(snapshot.body, normalized))

    row = await write_version(
        session,
        actor=actor,
        config_type=current.config_type,
        resource_key=current.resource_key,
        kind=current.kind,
        body=normalized,
        base_platform_version=base_version,
        base_checksum=base_checksum,
        diff_from_base=diff_from_base,
        description=description,
        replaces=current,
    )
    entry = await history_service.record_change(
        session,
        actor=actor,
        entity_type=history_service.ENTITY_CUSTOMIZATION,
        entity_id=row.id,
        change_type=history_service.CHANGE_UPDATE,
        before_state=before_state,
        after_state=customization_state(row),
        config_type=row.config_type,
        resource_key=row.resource_key,
        diff=ops_to_json(diff(_body_or_missing(before_state["body"]), normalized)),
    )
    return row, entry


async def update_customization(
    session: AsyncSession,
    *,
    actor: ActorContext,
    customization_id: str,
    expected_version: int,
    body: Any = MISSING,
    operations: list[dict[str, Any]] | None = None,
    base_platform_version: str | None = None,
    description: str | None = None,
    governance: GovernanceService | None = None,
    commit: bool = True,
) -> TenantCustomization:
    if body is not MISSING and operations is not None:
        raise ValidationError("Provide either a full body or patch operations, not both")

    async with unit_of_work(session, commit=commit):
        current = await _require_active(
            session,
            tenant_id=actor.tenant_id,
            customization_id=customization_id,
            expected_version=expected_version,
        )
        if operations is not None:
            next_body = apply_patch(current.body, ops_from_json(operations))
        elif body is not MISSING:
            next_body = body
        else:
            next_body = current.body
        row, _ = await rebase_version(
            session,
            actor=actor,
            current=current,
            body=next_body,
            base_platform_version=base_platform_version,
            description=description if description is not None else current.description,
            governance=governance,
        )

    logger.info(
        "customization_updated tenant_id=%s customization_id=%s previous_id=%s version=%s",
        actor.tenant_id,
        row.id,
        customization_id,
        row.version,
    )
    return row


async def retire(
    session: AsyncSession,
    *,
    actor: ActorContext,
    current: TenantCustomization,
    reason: str | None = None,
) -> ConfigChangeHistory:
    """Deactivate ``current`` and log the delete (no commit)."""
    before_state = customization_state(current)
    retired = await customizations_repo.deactivate_if_active(
        session,
        tenant_id=actor.tenant_id,
        customization_id=current.id,
        actor_id=actor.actor_id,
    )
    if not retired:
        raise ConflictError("Customization was modified concurrently", current_version=current.version)
    await session.refresh(current)
    return await history_service.record_change(
        session,
        actor=actor,
        entity_type=history_service.ENTITY_CUSTOMIZATION,
        entity_id=current.id,
        change_type=history_service.CHANGE_DELETE,
        before_state=before_state,
        after_state=customization_state(current),
        config_type=current.config_type,
        resource_key=current.resource_key,
        diff=ops_to_json(diff(_body_or_missing(before_state["body"]), MISSING)),
        change_reason=reason,
    )


async def deactivate_customization(
    session: AsyncSession,
    *,
    actor: ActorContext,
    customization_id: str,
    expected_version: int | None = None,
    reason: str | None = None,
    commit: bool = True,
) -> TenantCustomization:
    async with unit_of_work(session, commit=commit):
        current = await _require_active(
            session,
            tenant_id=actor.tenant_id,
            customization_id=customization_id,
            expected_version=expected_version,
        )
        await retire(session, actor=actor, current=current, reason=reason)

    logger.info(
        "customization_deactivated tenant_id=%s customization_id=%s version=%s",
        actor.tenant_id,
        current.id,
        current.version,
    )
    return current


async def restore_state(
    session: AsyncSession,
    *,
    actor: ActorContext,
    config_type: str,
    resource_key: str,
    expected_state: dict[str, Any] | None,
    target_state: dict[str, Any] | None,
) -> tuple[TenantCustomization | None, dict[str, Any] | None, dict[str, Any] | None, list[dict[str, Any]]]:
    """Bring a scope back to ``target_state`` if it still matches ``expected_state``."""
    active = await customizations_repo.get_active(
        session,
        tenant_id=actor.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )
    latest = await customizations_repo.get_latest(
        session,
        tenant_id=actor.tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )
    expected_active_id = expected_state.get("id") if expected_state and expected_state.get("is_active") else None
    expected_latest = expected_state.get("version") if expected_state else None
    current_active_id = active.id if active is not None else None
    latest_version = latest.version if latest is not None else None
    if current_active_id != expected_active_id or (
        expected_latest is not None and latest_version != expected_latest
    ):
        raise ConflictError(
            "Customization changed after this history entry; roll back newer changes first",
            current_version=latest_version,
            details={"config_type": config_type, "resource_key": resource_key},
        )

    before_state = customization_state(active) if active is not None else None
    before_body = _state_body(before_state)
    if target_state and target_state.get("is_active"):
        restored = await write_version(
            session,
            actor=actor,
            config_type=config_type,
            resource_key=resource_key,
            kind=target_state["kind"],
            body=target_state.get("body"),
            base_platform_version=target_state.get("base_platform_version"),
            base_checksum=target_state.get("base_checksum"),
            diff_from_base=target_state.get("diff_from_base"),
            description=target_state.get("description"),
            replaces=active,
        )
        after_state = customization_state(restored)
        return restored, before_state, after_state, ops_to_json(diff(before_body, _state_body(after_state)))

    if active is None:
        return None, None, None, []
    retired = await customizations_repo.deactivate_if_active(
        session,
        tenant_id=actor.tenant_id,
        customization_id=active.id,
        actor_id=actor.actor_id,
    )
    if not retired:
        raise ConflictError("Customization was modified concurrently", current_version=active.version)
    await session.refresh(active)
    return active, before_state, customization_state(active), ops_to_json(diff(before_body, MISSING))


async def get_customization(
    session: AsyncSession,
    *,
    tenant_id: str,
    customization_id: str,
) -> TenantCustomization:
    row = await customizations_repo.get_by_id(session, tenant_id=tenant_id, customization_id=customization_id)
    if row is None:
        raise NotFoundError("Customization not found", details={"customization_id": customization_id})
    return row


async def get_active(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str,
    resource_key: str,
) -> TenantCustomization | None:
    return await customizations_repo.get_active(
        session,
        tenant_id=tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )


async def list_customizations(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str | None = None,
    resource_key: str | None = None,
    kind: str | None = None,
    is_active: bool | None = True,
    offset: int = 0,
    limit: int = 50,
) -> list[TenantCustomization]:
    return await customizations_repo.list_customizations(
        session,
        tenant_id=tenant_id,
        config_type=config_type,
        resource_key=resource_key,
        kind=kind,
        is_active=is_active,
        offset=offset,
        limit=limit,
    )


async def get_version_history(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str,
    resource_key: str,
) -> list[TenantCustomization]:
    return await customizations_repo.list_scope_versions(
        session,
        tenant_id=tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )


async def get_version_chain(
    session: AsyncSession,
    *,
    tenant_id: str,
    customization_id: str,
) -> list[TenantCustomization]:
    """Newest-first walk along previous_version_id."""
    chain: list[TenantCustomization] = []
    row: TenantCustomization | None = await get_customization(
        session,
        tenant_id=tenant_id,
        customization_id=customization_id,
    )
    while row is not None:
        chain.append(row)
        if row.previous_version_id is None:
            break
        parent = await customizations_repo.get_by_id(
            session,
            tenant_id=tenant_id,
            customization_id=row.previous_version_id,
        )
        # Versions strictly decrease along the chain; anything else is corrupt data.
        if parent is not None and parent.version >= row.version:
            logger.error(
                "customization_chain_not_monotonic tenant_id=%s customization_id=%s parent_id=%s",
                tenant_id,
                row.id,
                parent.id,
            )
            break
        row = parent
    return chain


async def compare_with_platform(
    session: AsyncSession,
    *,
    tenant_id: str,
    customization_id: str,
) -> dict[str, Any]:
    row = await get_customization(session, tenant_id=tenant_id, customization_id=customization_id)
    version = row.base_platform_version or await current_version_value(session, tenant_id)
    snapshot = await platform_service.resolve_snapshot(
        session,
        config_type=row.config_type,
        resource_key=row.resource_key,
        as_of_version=version,
    )
    platform_body = platform_service.live_body(snapshot)
    return {
        "customization": customization_state(row),
        "platform_version": version,
        "platform_config": platform_service.serialize_snapshot(snapshot) if snapshot is not None else None,
        "diff": ops_to_json(diff(_body_or_missing(platform_body), _body_or_missing(row.body))),
    }


async def resolve_effective(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str,
    resource_key: str,
) -> dict[str, Any]:
    """The value the tenant actually sees for one resource."""
    active = await customizations_repo.get_active(
        session,
        tenant_id=tenant_id,
        config_type=config_type,
        resource_key=resource_key,
    )
    version = await current_version_value(session, tenant_id)
    if active is not None:
        return {
            "source": "customization",
            "value": active.body,
            "customization_id": active.id,
            "customization_version": active.version,
            "platform_version": version,
        }
    snapshot = await platform_service.resolve_snapshot(
        session,
        config_type=config_type,
        resource_key=resource_key,
        as_of_version=version,
    )
    body = platform_service.live_body(snapshot)
    return {
        "source": "platform" if body is not None else "none",
        "value": body,
        "customization_id": None,
        "customization_version": None,
        "platform_version": version,
    }
