from __future__ import annotations

from uuid import uuid4

import pytest

from upgradeguard.core.errors import ConflictError, StateError, ValidationError
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services import history as history_service
from upgradeguard.services.customizations import (
    KIND_EXTEND,
    KIND_OVERRIDE,
    create_customization,
    get_active,
    resolve_effective,
)
from upgradeguard.services.impact_analysis import analyze, get_impact
from upgradeguard.services.resolution import (
    acknowledge,
    apply_upgrade,
    auto_resolve,
    auto_resolve_all,
    legal_choices,
    preview_merge,
    resolve_impact,
)
from upgradeguard.services.upgrade_summary import current_version_value, summarize_impacts
from upgradeguard.tests.utils.seed import STATUS_V1, V1, V2, actor, publish, seed_manifest, seed_status_release


MERGED_CHOICES = ["open", "in_progress", "in_review", "closed"]


def _tenant() -> str:
    return f"t-{uuid4().hex[:8]}"


async def _customize(tenant_id: str, kind: str, body, *, resource_key: str = "status"):
    async with SessionLocal() as session:
        return await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key=resource_key,
            kind=kind,
            body=body,
        )


async def _analyzed_conflict(tenant_id: str) -> tuple[str, str]:
    await seed_status_release()
    await _customize(tenant_id, KIND_EXTEND, {**STATUS_V1, "choices": ["open", "closed", "in_review"]})
    manifest_id = await seed_manifest()
    async with SessionLocal() as session:
        impacts = await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
    return manifest_id, impacts[0].id


def test_legal_choices_per_impact_type() -> None:
    assert legal_choices("conflict") == {"use_platform", "keep_tenant", "custom_merge"}
    assert "auto_merge" in legal_choices("override_affected")
    assert legal_choices("removed") == {"use_platform"}
    assert legal_choices("new_available") == {"use_platform"}


@pytest.mark.asyncio
async def test_preview_custom_merge_writes_nothing() -> None:
    tenant_id = _tenant()
    _, impact_id = await _analyzed_conflict(tenant_id)
    custom = {**STATUS_V1, "choices": MERGED_CHOICES}

    async with SessionLocal() as session:
        preview = await preview_merge(
            session,
            tenant_id=tenant_id,
            impact_id=impact_id,
            strategy="custom_merge",
            custom_value=custom,
        )
        assert preview["allowed"] is True
        assert preview["value"]["choices"] == MERGED_CHOICES
        assert preview["diff_from_platform"] == [{"op": "replace", "path": "/choices", "value": MERGED_CHOICES}]

        platform_preview = await preview_merge(session, tenant_id=tenant_id, impact_id=impact_id, strategy="use_platform")
        assert platform_preview["value"]["choices"] == ["open", "in_progress", "closed"]

        impact = await get_impact(session, tenant_id=tenant_id, impact_id=impact_id)
        assert impact.status == "analyzed"
        assert impact.row_version == 2
        active = await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert active.version == 1


@pytest.mark.asyncio
async def test_auto_merge_preview_rejected_while_conflicts_exist() -> None:
    tenant_id = _tenant()
    _, impact_id = await _analyzed_conflict(tenant_id)
    async with SessionLocal() as session:
        preview_result = await preview_merge(
            session,
            tenant_id=tenant_id,
            impact_id=impact_id,
            strategy="use_platform",
        )
        assert preview_result["allowed"] is True
        with pytest.raises(ValidationError):
            await preview_merge(session, tenant_id=tenant_id, impact_id=impact_id, strategy="auto_merge")


@pytest.mark.asyncio
async def test_custom_merge_resolution_rebases_customization() -> None:
    tenant_id = _tenant()
    _, impact_id = await _analyzed_conflict(tenant_id)
    custom = {**STATUS_V1, "choices": MERGED_CHOICES}

    async with SessionLocal() as session:
        impact = await resolve_impact(
            session,
            actor=actor(tenant_id),
            impact_id=impact_id,
            choice="custom_merge",
            custom_value=custom,
            notes="keep review step",
            expected_row_version=2,
        )
        assert impact.status == "resolved"
        assert impact.row_version == 3
        assert impact.resolution_choice == "custom_merge"
        assert impact.custom_resolution_value["choices"] == MERGED_CHOICES
        assert impact.resolved_by == "user-1"

        active = await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert active.version == 2
        assert active.body["choices"] == MERGED_CHOICES
        assert active.base_platform_version == V2

        entries = await history_service.list_history(
            session, tenant_id=tenant_id, entity_type="upgrade_impact", change_type="update"
        )
        assert len(entries) == 1
        assert entries[0].change_source == "upgrade"
        assert entries[0].metadata_json["customization_history_id"]


@pytest.mark.asyncio
async def test_resolve_rejects_illegal_choice_and_stale_version() -> None:
    tenant_id = _tenant()
    _, impact_id = await _analyzed_conflict(tenant_id)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="auto_merge")
        with pytest.raises(ValidationError):
            await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="custom_merge")
        with pytest.raises(ConflictError) as exc_info:
            await resolve_impact(
                session,
                actor=actor(tenant_id),
                impact_id=impact_id,
                choice="keep_tenant",
                expected_row_version=1,
            )
        assert exc_info.value.current_version == 2


@pytest.mark.asyncio
async def test_resolving_twice_is_a_state_error() -> None:
    tenant_id = _tenant()
    _, impact_id = await _analyzed_conflict(tenant_id)
    async with SessionLocal() as session:
        await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="keep_tenant")
        with pytest.raises(StateError):
            await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="keep_tenant")


@pytest.mark.asyncio
async def test_use_platform_retires_customization() -> None:
    tenant_id = _tenant()
    manifest_id, impact_id = await _analyzed_conflict(tenant_id)
    async with SessionLocal() as session:
        await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="use_platform")
        assert await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status") is None

        await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        effective = await resolve_effective(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert effective["source"] == "platform"
        assert effective["value"]["choices"] == ["open", "in_progress", "closed"]


@pytest.mark.asyncio
async def test_auto_resolve_applies_preview() -> None:
    tenant_id = _tenant()
    await seed_status_release()
    await _customize(tenant_id, KIND_OVERRIDE, {**STATUS_V1, "label": "Ticket status"})
    manifest_id = await seed_manifest()

    async with SessionLocal() as session:
        impacts = await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
        assert summarize_impacts(impacts)["auto_resolvable"] == 1
        impact = await auto_resolve(session, actor=actor(tenant_id), impact_id=impacts[0].id)
        assert impact.status == "auto_resolved"
        assert impact.auto_resolved is True
        assert impact.resolution_choice == "auto_merge"

        # A second call is a no-op on an already auto-resolved record.
        again = await auto_resolve(session, actor=actor(tenant_id), impact_id=impacts[0].id)
        assert again.row_version == impact.row_version

        active = await get_active(session, tenant_id=tenant_id, config_type="asset", resource_key="status")
        assert active.body["label"] == "Ticket status"
        assert active.body["choices"] == ["open", "in_progress", "closed"]


@pytest.mark.asyncio
async def test_auto_resolve_refuses_conflicts() -> None:
    tenant_id = _tenant()
    _, impact_id = await _analyzed_conflict(tenant_id)
    async with SessionLocal() as session:
        with pytest.raises(StateError):
            await auto_resolve(session, actor=actor(tenant_id), impact_id=impact_id)


@pytest.mark.asyncio
async def test_auto_resolve_all_skips_manual_records() -> None:
    tenant_id = _tenant()
    await seed_status_release()
    await publish("asset", "priority", V1, {"choices": ["low", "high"], "label": "Priority"})
    await publish("asset", "priority", V2, {"choices": ["low", "high"], "label": "Urgency"})
    await _customize(tenant_id, KIND_EXTEND, {**STATUS_V1, "choices": ["open", "closed", "in_review"]})
    await _customize(
        tenant_id,
        KIND_OVERRIDE,
        {"choices": ["low", "medium", "high"], "label": "Priority"},
        resource_key="priority",
    )
    manifest_id = await seed_manifest()

    async with SessionLocal() as session:
        impacts = await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
        by_key = {impact.resource_key: impact for impact in impacts}
        result = await auto_resolve_all(session, actor=actor(tenant_id), manifest_id=manifest_id)

    assert result == {"resolved": [by_key["priority"].id], "failed": []}
    async with SessionLocal() as session:
        status_impact = await get_impact(session, tenant_id=tenant_id, impact_id=by_key["status"].id)
        assert status_impact.status == "analyzed"


@pytest.mark.asyncio
async def test_acknowledge_rules() -> None:
    tenant_id = _tenant()
    manifest_id, impact_id = await _analyzed_conflict(tenant_id)
    async with SessionLocal() as session:
        # Manual-review records must be resolved before they can be acknowledged.
        with pytest.raises(StateError):
            await acknowledge(session, actor=actor(tenant_id), impact_id=impact_id)
        await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="keep_tenant")
        impact = await acknowledge(session, actor=actor(tenant_id), impact_id=impact_id, notes="reviewed")
        assert impact.status == "acknowledged"
        assert impact.resolution_choice == "keep_tenant"
        assert impact.resolution_notes == "reviewed"


@pytest.mark.asyncio
async def test_new_resource_notice_can_be_acknowledged_directly() -> None:
    tenant_id = _tenant()
    await publish("asset", "status", V1, STATUS_V1)
    await publish("asset", "priority", V2, {"choices": ["low", "high"]})
    manifest_id = await seed_manifest()
    async with SessionLocal() as session:
        impacts = await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
        impact = await acknowledge(session, actor=actor(tenant_id), impact_id=impacts[0].id)
        assert impact.status == "acknowledged"
        assert impact.resolved_by == "user-1"


@pytest.mark.asyncio
async def test_apply_blocked_by_unresolved_critical_impact() -> None:
    tenant_id = _tenant()
    await publish("asset", "legacy", V1, {"enabled": True})
    await publish("asset", "legacy", V2, None, status="removed")
    await _customize(tenant_id, KIND_OVERRIDE, {"enabled": False}, resource_key="legacy")
    manifest_id = await seed_manifest()

    async with SessionLocal() as session:
        with pytest.raises(StateError) as exc_info:
            await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        assert exc_info.value.blockers == [
            {"config_type": "asset", "resource_key": "legacy", "reason": "not_analyzed"}
        ]

        impacts = await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
        impact_id = impacts[0].id
        with pytest.raises(StateError) as exc_info:
            await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        assert exc_info.value.blockers[0]["reason"] == "unresolved"
        assert exc_info.value.blockers[0]["impact_severity"] == "critical"
        assert await current_version_value(session, tenant_id) == V1

        await resolve_impact(session, actor=actor(tenant_id), impact_id=impact_id, choice="use_platform")
        result = await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        assert result["previous_version"] == V1
        assert result["current_version"] == V2
        assert await current_version_value(session, tenant_id) == V2


@pytest.mark.asyncio
async def test_apply_requires_matching_starting_version() -> None:
    tenant_id = _tenant()
    await seed_status_release()
    manifest_id = await seed_manifest()
    async with SessionLocal() as session:
        await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        with pytest.raises(StateError) as exc_info:
            await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)
        assert exc_info.value.details["current_version"] == V2

        entries = await history_service.list_history(session, tenant_id=tenant_id, entity_type="platform_version")
        assert len(entries) == 1
        assert entries[0].after_state["platform_version"] == V2
