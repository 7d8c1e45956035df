from __future__ import annotations

import pytest

from upgradeguard.core.errors import ConflictError, ValidationError
from upgradeguard.merge.canonical import checksum
from upgradeguard.merge.differ import PatchOp
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.manifests import build_manifest, create_manifest, default_impact_level
from upgradeguard.services.platform_configs import (
    compare_versions,
    list_resource_keys_changed_between,
    publish_snapshot,
    resolve_snapshot,
    version_key,
)
from upgradeguard.tests.utils.seed import STATUS_V1, STATUS_V2, V1, V2, publish, seed_manifest, seed_status_release


def test_version_ordering_is_numeric() -> None:
    assert compare_versions("1.10.0", "1.9.0") == 1
    assert compare_versions("2.0", "2.0") == 0
    assert version_key("1.0.0") < version_key("1.0.0.1")
    assert version_key("1.0.1") < version_key("1.0.rc1")


def test_default_impact_levels() -> None:
    assert default_impact_level("added", []) == "low"
    assert default_impact_level("removed", []) == "critical"
    assert default_impact_level("deprecated", []) == "high"
    assert default_impact_level("modified", [PatchOp("replace", "/a", 2)], {"a": 1}) == "medium"
    assert default_impact_level("modified", [PatchOp("remove", "/a")], {"a": 1}) == "high"
    assert default_impact_level("modified", [PatchOp("replace", "/a", "two")], {"a": 1}) == "high"


@pytest.mark.asyncio
async def test_publish_is_idempotent_and_immutable() -> None:
    async with SessionLocal() as session:
        first, created = await publish_snapshot(
            session,
            config_type="asset",
            resource_key="status",
            platform_version=V1,
            body={"b": 1, "a": 2},
        )
        assert created is True
        assert first.checksum == checksum({"a": 2, "b": 1})

        again, created = await publish_snapshot(
            session,
            config_type="asset",
            resource_key="status",
            platform_version=V1,
            body={"a": 2, "b": 1},
        )
        assert created is False
        assert again.id == first.id

        with pytest.raises(ConflictError):
            await publish_snapshot(
                session,
                config_type="asset",
                resource_key="status",
                platform_version=V1,
                body={"a": 3},
            )


@pytest.mark.asyncio
async def test_publish_requires_body_unless_removed() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await publish_snapshot(session, config_type="a", resource_key="b", platform_version=V1, body=None)
        with pytest.raises(ValidationError):
            await publish_snapshot(
                session,
                config_type="a",
                resource_key="b",
                platform_version=V1,
                body={},
                status="archived",
            )
        tombstone, _ = await publish_snapshot(
            session,
            config_type="a",
            resource_key="b",
            platform_version=V1,
            body={"ignored": True},
            status="removed",
        )
        assert tombstone.body is None


@pytest.mark.asyncio
async def test_resolve_snapshot_picks_latest_at_or_before_version() -> None:
    await publish("asset", "status", V1, STATUS_V1)
    await publish("asset", "status", "1.10.0", STATUS_V2)
    async with SessionLocal() as session:
        assert (await resolve_snapshot(session, config_type="asset", resource_key="status", as_of_version="1.9.0")).platform_version == V1
        assert (await resolve_snapshot(session, config_type="asset", resource_key="status", as_of_version="1.10.0")).platform_version == "1.10.0"
        assert await resolve_snapshot(session, config_type="asset", resource_key="status", as_of_version="0.9") is None


@pytest.mark.asyncio
async def test_build_manifest_derives_changes_from_snapshots() -> None:
    await seed_status_release()
    await publish("asset", "priority", V2, {"choices": ["low", "high"]})
    await publish("asset", "legacy", V1, {"enabled": True})
    await publish("asset", "legacy", V2, None, status="removed")
    await publish("asset", "owner", V1, {"required": False})
    await publish("asset", "owner", V2, {"required": False}, status="deprecated")
    await publish("asset", "unchanged", V1, {"x": 1})

    async with SessionLocal() as session:
        changed = await list_resource_keys_changed_between(session, from_version=V1, to_version=V2)
        manifest, created = await build_manifest(session, from_version=V1, to_version=V2, created_by="ops")

    assert created is True
    summary = {
        change["resource_key"]: (change["change_type"], change["impact_level"])
        for change in manifest.config_changes
    }
    assert summary == {
        "legacy": ("removed", "critical"),
        "owner": ("deprecated", "high"),
        "priority": ("added", "low"),
        "status": ("modified", "medium"),
    }
    assert [item["resource"] for item in manifest.deprecations] == ["asset/owner"]
    assert [key for _, key in changed] == ["legacy", "owner", "priority", "status"]
    assert manifest.checksum == checksum(manifest.config_changes)


@pytest.mark.asyncio
async def test_create_manifest_validation_and_idempotency() -> None:
    changes = [
        {
            "config_type": "asset",
            "resource_key": "status",
            "change_type": "modified",
            "diff": [{"op": "replace", "path": "/choices", "value": ["a"]}],
        }
    ]
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await create_manifest(session, from_version=V2, to_version=V1, config_changes=changes)
        with pytest.raises(ValidationError):
            await create_manifest(session, from_version=V1, to_version=V2, config_changes=changes, upgrade_type="hotfix")
        with pytest.raises(ValidationError):
            await create_manifest(session, from_version=V1, to_version=V2, config_changes=changes + changes)
        with pytest.raises(ValidationError):
            await create_manifest(
                session,
                from_version=V1,
                to_version=V2,
                config_changes=[{"config_type": "asset", "resource_key": "x", "change_type": "renamed"}],
            )

        manifest, created = await create_manifest(session, from_version=V1, to_version=V2, config_changes=changes)
        assert created is True
        assert manifest.config_changes[0]["impact_level"] == "medium"

        same, created = await create_manifest(session, from_version=V1, to_version=V2, config_changes=changes)
        assert created is False
        assert same.id == manifest.id

        with pytest.raises(ConflictError):
            await create_manifest(session, from_version=V1, to_version=V2, config_changes=[])


@pytest.mark.asyncio
async def test_seeded_manifest_is_reused() -> None:
    await seed_status_release()
    assert await seed_manifest() == await seed_manifest()
