from __future__ import annotations

import argparse
import json
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import select

from upgradeguard.domain.models import ApiKey, PlatformConfigSnapshot, User
from upgradeguard.persistence.db import SessionLocal
from upgradeguard.services.auth.api_keys import hash_api_key
from upgradeguard.services.customizations import KIND_OVERRIDE, create_customization
from upgradeguard.tests.utils.seed import STATUS_V1, STATUS_V2, V1, V2, actor
from scripts.analyze_upgrade import _analyze
from scripts.build_manifest import _build
from scripts.create_api_key import _create_key
from scripts.publish_platform_snapshot import _publish


def _write_release(tmp_path: Path, name: str, entries: list[dict]) -> str:
    path = tmp_path / name
    path.write_text(json.dumps(entries), encoding="utf-8")
    return str(path)


@pytest.mark.asyncio
async def test_release_scripts_publish_build_and_analyze(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    v1_file = _write_release(
        tmp_path,
        "v1.json",
        [
            {"config_type": "asset", "resource_key": "status", "body": STATUS_V1},
            {"config_type": "asset", "resource_key": "legacy", "body": {"enabled": True}},
        ],
    )
    v2_file = _write_release(
        tmp_path,
        "v2.json",
        [
            {"config_type": "asset", "resource_key": "status", "body": STATUS_V2},
            {"config_type": "asset", "resource_key": "legacy", "status": "removed"},
        ],
    )
    for version, path in ((V1, v1_file), (V2, v2_file)):
        status = await _publish(argparse.Namespace(version=version, file=path, published_by="release-bot"))
        assert status == 0
    # Publishing the same file again leaves the stored snapshots untouched.
    assert await _publish(argparse.Namespace(version=V1, file=v1_file, published_by="release-bot")) == 0
    assert "published 0 new snapshot(s), 2 unchanged" in capsys.readouterr().out

    async with SessionLocal() as session:
        snapshots = (await session.execute(select(PlatformConfigSnapshot))).scalars().all()
    assert len(snapshots) == 4
    assert {row.published_by for row in snapshots} == {"release-bot"}

    status = await _build(
        argparse.Namespace(
            from_version=V1,
            to_version=V2,
            upgrade_type="minor",
            description=None,
            release_notes="status gains in_progress",
            mandatory=False,
        )
    )
    assert status == 0
    built = json.loads(capsys.readouterr().out)
    assert built["created"] is True
    manifest_id = built["manifest"]["id"]

    async with SessionLocal() as session:
        await create_customization(
            session,
            actor=actor(tenant_id),
            config_type="asset",
            resource_key="legacy",
            kind=KIND_OVERRIDE,
            body={"enabled": False},
        )

    status = await _analyze(argparse.Namespace(tenant=tenant_id, manifest_id=manifest_id, force=False, json=False))
    # A critical impact on the removed resource blocks the upgrade.
    assert status == 2
    output = capsys.readouterr().out
    assert f"tenant={tenant_id}" in output
    assert "critical: 1" in output


@pytest.mark.asyncio
async def test_create_api_key_script_stores_only_the_hash(capsys: pytest.CaptureFixture[str]) -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    args = argparse.Namespace(
        tenant=tenant_id,
        role="editor",
        name="ci",
        user_id=None,
        email=None,
        expires_in_days=30,
    )
    assert await _create_key(args) == 0
    raw_key = capsys.readouterr().out.strip().splitlines()[-1].strip()

    async with SessionLocal() as session:
        row = (
            await session.execute(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key)))
        ).scalar_one()
        user = await session.get(User, row.user_id)
    assert row.tenant_id == tenant_id
    assert row.expires_at is not None
    assert user is not None and user.role == "editor"
