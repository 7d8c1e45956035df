from __future__ import annotations

from uuid import uuid4

import pytest

from upgradeguard.core.errors import NotFoundError, ValidationError
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.customizations import KIND_OVERRIDE, create_customization
from upgradeguard.services.impact_analysis import analyze
from upgradeguard.services.resolution import apply_upgrade, auto_resolve_all
from upgradeguard.services.upgrade_summary import generate_guidance, get_upgrade_context, summarize_impacts
from upgradeguard.tests.utils.seed import STATUS_V1, V1, V2, actor, publish, seed_manifest, seed_status_release


def _tenant() -> str:
    return f"t-{uuid4().hex[:8]}"


async def _override(tenant_id: str, resource_key: str, body) -> None:
    async with SessionLocal() as session:
        await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key=resource_key,
            kind=KIND_OVERRIDE,
            body=body,
        )


async def _seed_release() -> None:
    await seed_status_release()
    await publish("asset", "priority", V2, {"choices": ["low", "high"]})
    await publish("asset", "legacy", V1, {"enabled": True})
    await publish("asset", "legacy", V2, None, status="removed")
    await publish("asset", "owner", V1, {"required": False})
    await publish("asset", "owner", V2, {"required": False}, status="deprecated")


@pytest.mark.asyncio
async def test_context_highlights_blockers_before_upgrade() -> None:
    tenant_id = _tenant()
    await _seed_release()
    await _override(tenant_id, "status", {**STATUS_V1, "label": "Ticket status"})
    await _override(tenant_id, "legacy", {"enabled": False})
    manifest_id = await seed_manifest()
    async with SessionLocal() as session:
        await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)

    async with SessionLocal() as session:
        context = await get_upgrade_context(session, tenant_id)

    assert context["manifest_id"] == manifest_id
    summary = context["impact_summary"]
    assert summary["total"] == 3
    assert summary["auto_resolvable"] == 1
    assert [item["resource_key"] for item in summary["conflicts"]] == ["legacy"]
    conflict = summary["conflicts"][0]
    assert conflict["impact_type"] == "removed"
    assert conflict["severity"] == "critical"
    assert conflict["tenant_value"] == {"enabled": False}
    assert conflict["new_platform_value"] is None
    assert [(item["code"], item["name"]) for item in summary["new_features"]] == [("priority", "Priority")]
    assert [item["resource"] for item in summary["deprecations"]] == ["asset/owner"]

    customizations = context["customizations"]
    assert customizations["total"] == 2
    assert customizations["by_kind"] == {"override": 2}
    assert {item["resource_key"] for item in customizations["items"]} == {"status", "legacy"}

    guidance = context["guidance"]
    assert guidance["phase"] == "pre"
    assert "1 critical" in guidance["summary"]
    assert [item["id"] for item in guidance["action_items"]] == [
        "resolve-blocking",
        "auto-resolve",
        "review-release-notes",
        "plan-migrations",
    ]
    assert guidance["action_items"][0]["priority"] == "required"
    assert "1 critical impact(s) must be resolved before upgrading" in guidance["warnings"]
    assert "1 customized resource(s) are removed by the platform" in guidance["warnings"]
    assert "Upgrading from 1.0.0 to 2.0.0" in guidance["key_points"]


@pytest.mark.asyncio
async def test_context_switches_to_post_upgrade_guidance_after_apply() -> None:
    tenant_id = _tenant()
    await seed_status_release()
    await publish("asset", "priority", V2, {"choices": ["low", "high"]})
    await _override(tenant_id, "status", {**STATUS_V1, "label": "Ticket status"})
    manifest_id = await seed_manifest()
    async with SessionLocal() as session:
        await analyze(session, actor=actor(tenant_id), manifest_id=manifest_id)
        await auto_resolve_all(session, actor=actor(tenant_id), manifest_id=manifest_id)
        await apply_upgrade(session, actor=actor(tenant_id), manifest_id=manifest_id)

    async with SessionLocal() as session:
        context = await get_upgrade_context(session, tenant_id)

    assert context["current_version"] == V2
    assert context["available_manifests"] == []
    # With nothing pending the last applied manifest is described.
    assert context["manifest_id"] == manifest_id
    guidance = context["guidance"]
    assert guidance["phase"] == "post"
    assert guidance["summary"].startswith("Now on 2.0.0")
    assert "1 impact(s) were resolved into new customization versions" in guidance["key_points"]
    assert [item["id"] for item in guidance["action_items"]] == ["verify-customizations", "explore-features"]
    assert guidance["warnings"] == []


@pytest.mark.asyncio
async def test_context_phase_and_manifest_lookup() -> None:
    tenant_id = _tenant()
    async with SessionLocal() as session:
        context = await get_upgrade_context(session, tenant_id, phase="during")
        assert context["manifest_id"] is None
        assert context["impact_summary"]["conflicts"] == []
        assert context["customizations"] == {"total": 0, "by_kind": {}, "by_config_type": {}, "items": []}
        assert context["guidance"]["phase"] == "during"
        assert context["guidance"]["action_items"] == []

        with pytest.raises(NotFoundError):
            await get_upgrade_context(session, tenant_id, manifest_id=uuid4().hex)
        with pytest.raises(ValidationError):
            await get_upgrade_context(session, tenant_id, phase="later")


def test_pre_upgrade_guidance_without_impacts() -> None:
    summary = summarize_impacts([])
    guidance = generate_guidance(
        "pre",
        current_version=V1,
        target_version=None,
        customizations={"total": 4},
        summary=summary,
        highlights={"conflicts": [], "new_features": [], "deprecations": []},
    )
    assert guidance["summary"].startswith("4 customization(s) on record")
    assert guidance["key_points"][0] == "Upgrading from 1.0.0"
    assert [item["id"] for item in guidance["action_items"]] == ["review-release-notes"]
    assert guidance["warnings"] == []
