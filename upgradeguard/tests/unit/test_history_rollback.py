from __future__ import annotations

from uuid import uuid4

import pytest

from upgradeguard.core.errors import ConflictError, NotFoundError, StateError
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services import history as history_service
from upgradeguard.services.customizations import (
    KIND_EXTEND,
    KIND_OVERRIDE,
    create_customization,
    deactivate_customization,
    get_active,
    update_customization,
)
from upgradeguard.services.impact_analysis import analyze, get_impact
from upgradeguard.services.resolution import apply_upgrade, resolve_impact
from upgradeguard.services.upgrade_summary import current_version_value
from upgradeguard.tests.utils.seed import STATUS_V1, V1, actor, publish, seed_manifest, seed_status_release


def _tenant() -> str:
    return f"t-{uuid4().hex[:8]}"


async def _only_entry(session, tenant_id: str, **filters):
    entries = await history_service.list_history(session, tenant_id=tenant_id, **filters)
    assert len(entries) == 1
    return entries[0]


@pytest.mark.asyncio
async def test_rollback_update_restores_previous_body_as_new_version() -> None:
    tenant_id = _tenant()
    await publish("asset", "status", V1, STATUS_V1)
    async with SessionLocal() as session:
        first = await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key="status",
            kind=KIND_OVERRIDE,
            body={**STATUS_V1, "label": "One"},
        )
        await update_customization(
            session,
            actor=actor(tenant_id),
            customization_id=first.id,
            expected_version=1,
            body={**STATUS_V1, "label": "Two"},
        )
        update_entry = await _only_entry(session, tenant_id, change_type="update")

        rollback_entry = await history_service.rollback(
            session,
            actor=actor(tenant_id),
            history_id=update_entry.id,
            reason="bad label",
        )
        assert rollback_entry.change_type == "rollback"
        assert rollback_entry.rollback_of == update_entry.id
        assert rollback_entry.change_source == "rollback"
        assert rollback_entry.change_reason == "bad label"
        assert rollback_entry.diff == [{"op": "replace", "path": "/label", "value": "One"}]

        active = await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert active.version == 3
        assert active.body["label"] == "One"

        # Applying the same rollback twice is refused.
        with pytest.raises(StateError):
            await history_service.rollback(session, actor=actor(tenant_id), history_id=update_entry.id)


@pytest.mark.asyncio
async def test_rollback_of_create_deactivates_and_of_delete_restores() -> None:
    tenant_id = _tenant()
    await publish("asset", "status", V1, STATUS_V1)
    async with SessionLocal() as session:
        row = await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key="status",
            kind=KIND_OVERRIDE,
            body={**STATUS_V1, "label": "Mine"},
        )
        await deactivate_customization(session, actor=actor(tenant_id), customization_id=row.id)
        delete_entry = await _only_entry(session, tenant_id, change_type="delete")

        await history_service.rollback(session, actor=actor(tenant_id), history_id=delete_entry.id)
        restored = await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert restored is not None
        assert restored.version == 2
        assert restored.body["label"] == "Mine"


@pytest.mark.asyncio
async def test_rollback_of_stale_entry_conflicts() -> None:
    tenant_id = _tenant()
    await publish("asset", "status", V1, STATUS_V1)
    async with SessionLocal() as session:
        first = await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key="status",
            kind=KIND_OVERRIDE,
            body=STATUS_V1,
        )
        create_entry = await _only_entry(session, tenant_id, change_type="create")
        await update_customization(
            session,
            actor=actor(tenant_id),
            customization_id=first.id,
            expected_version=1,
            body={**STATUS_V1, "label": "Two"},
        )
        # A newer change sits on top of the create, so it must be undone first.
        with pytest.raises(ConflictError):
            await history_service.rollback(session, actor=actor(tenant_id), history_id=create_entry.id)


@pytest.mark.asyncio
async def test_rollback_of_resolution_reopens_impact_and_customization() -> None:
    tenant_id = _tenant()
    await seed_status_release()
    async with SessionLocal() as session:
        await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key="status",
            kind=KIND_EXTEND,
            body={**STATUS_V1, "choices": ["open", "closed", "in_review"]},
        )
    manifest_id = await seed_manifest()

    async with SessionLocal() as session:
        impacts = await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
        impact_id = impacts[0].id
        await resolve_impact(
            session,
            actor=actor(tenant_id),
            impact_id=impact_id,
            choice="custom_merge",
            custom_value={**STATUS_V1, "choices": ["open", "in_progress", "in_review", "closed"]},
        )
        impact_entry = await _only_entry(session, tenant_id, entity_type="upgrade_impact", change_type="update")

        rollback_entry = await history_service.rollback(session, actor=actor(tenant_id), history_id=impact_entry.id)
        assert rollback_entry.metadata_json["customization_history_id"]

        impact = await get_impact(session, tenant_id=tenant_id, impact_id=impact_id)
        assert impact.status == "analyzed"
        assert impact.resolution_choice is None
        assert impact.custom_resolution_value is None
        assert impact.row_version == 4

        active = await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert active.version == 3
        assert active.body["choices"] == ["open", "closed", "in_review"]
        assert active.base_platform_version == V1


@pytest.mark.asyncio
async def test_rollback_of_applied_upgrade_restores_version() -> None:
    tenant_id = _tenant()
    await seed_status_release()
    manifest_id = await seed_manifest()
    async with SessionLocal() as session:
        await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        entry = await _only_entry(session, tenant_id, entity_type="platform_version")
        await history_service.rollback(session, actor=actor(tenant_id), history_id=entry.id)
        assert await current_version_value(session, tenant_id) == V1

        rollback_entry = await _only_entry(session, tenant_id, change_type="rollback")
        assert rollback_entry.after_state["platform_version"] == V1
        assert rollback_entry.metadata_json["manifest_id"] == manifest_id


@pytest.mark.asyncio
async def test_history_is_tenant_scoped() -> None:
    tenant_id = _tenant()
    await publish("asset", "status", V1, STATUS_V1)
    async with SessionLocal() as session:
        await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key="status",
            kind=KIND_OVERRIDE,
            body=STATUS_V1,
        )
        entry = await _only_entry(session, tenant_id)
        with pytest.raises(NotFoundError):
            await history_service.get_history_entry(session, tenant_id=_tenant(), entry_id=entry.id)
        assert await history_service.list_history(session, tenant_id=_tenant()) == []
