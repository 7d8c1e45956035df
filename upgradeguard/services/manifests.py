from __future__ import annotations

from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.config import SEVERITY_ORDER
from upgradeguard.core.errors import ConflictError, IntegrityViolationError, NotFoundError, ValidationError
from upgradeguard.domain.models import UpgradeManifest
from upgradeguard.merge.canonical import MISSING, checksum, json_type
from upgradeguard.merge.differ import OP_REMOVE, OP_REPLACE, PatchOp, get_at, diff, ops_from_json, ops_to_json
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import manifests as manifests_repo
from upgradeguard.services import platform_configs as platform_service


logger = logging.getLogger(__name__)

CHANGE_ADDED = "added"
CHANGE_MODIFIED = "modified"
CHANGE_REMOVED = "removed"
CHANGE_DEPRECATED = "deprecated"
CHANGE_TYPES = (CHANGE_ADDED, CHANGE_MODIFIED, CHANGE_REMOVED, CHANGE_DEPRECATED)

UPGRADE_TYPES = ("major", "minor", "patch")

DEFAULT_IMPACT_LEVELS: dict[str, str] = {
    CHANGE_ADDED: "low",
    CHANGE_MODIFIED: "medium",
    CHANGE_DEPRECATED: "high",
    CHANGE_REMOVED: "critical",
}


def serialize_manifest(row: UpgradeManifest) -> dict[str, Any]:
    return {
        "id": row.id,
        "from_version": row.from_version,
        "to_version": row.to_version,
        "config_changes": row.config_changes,
        "checksum": row.checksum,
        "description": row.description,
        "upgrade_type": row.upgrade_type,
        "is_mandatory": row.is_mandatory,
        "release_date": row.release_date.isoformat() if row.release_date else None,
        "release_notes": row.release_notes,
        "deprecations": row.deprecations,
        "created_by": row.created_by,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def default_impact_level(change_type: str, ops: list[PatchOp], old_body: Any = MISSING) -> str:
    level = DEFAULT_IMPACT_LEVELS[change_type]
    if change_type != CHANGE_MODIFIED:
        return level
    for op in ops:
        # Dropped properties and JSON type changes break tenants that depend on them.
        if op.op == OP_REMOVE:
            return "high"
        if (
            op.op == OP_REPLACE
            and old_body is not MISSING
            and json_type(get_at(old_body, op.path)) != json_type(op.value)
        ):
            return "high"
    return level


def _normalize_change(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationError("Each config change must be an object")
    config_type = raw.get("config_type")
    resource_key = raw.get("resource_key")
    change_type = raw.get("change_type")
    if not isinstance(config_type, str) or not config_type:
        raise ValidationError("Config change is missing config_type")
    if not isinstance(resource_key, str) or not resource_key:
        raise ValidationError("Config change is missing resource_key")
    if change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unsupported change_type '{change_type}'")
    ops = ops_from_json(raw.get("diff") or [])
    impact_level = raw.get("impact_level") or default_impact_level(change_type, ops)
    if impact_level not in SEVERITY_ORDER:
        raise ValidationError(f"Unsupported impact_level '{impact_level}'")
    return {
        "config_type": config_type,
        "resource_key": resource_key,
        "change_type": change_type,
        "previous_checksum": raw.get("previous_checksum"),
        "new_checksum": raw.get("new_checksum"),
        "diff": ops_to_json(ops),
        "impact_level": impact_level,
    }


def _normalize_deprecation(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationError("Each deprecation must be an object")
    for field in ("code", "resource", "message"):
        if not isinstance(raw.get(field), str) or not raw.get(field):
            raise ValidationError(f"Deprecation is missing {field}")
    return {
        "code": raw["code"],
        "resource": raw["resource"],
        "message": raw["message"],
        "removal_version": raw.get("removal_version"),
        "replacement": raw.get("replacement"),
    }


def manifest_checksum(config_changes: list[dict[str, Any]]) -> str:
    return checksum(config_changes)


def verify_manifest(manifest: UpgradeManifest) -> None:
    # Manifests are immutable; a mismatch means the stored changes were edited out of band.
    actual = manifest_checksum(manifest.config_changes or [])
    if actual != manifest.checksum:
        logger.error(
            "manifest_checksum_mismatch manifest_id=%s stored=%s actual=%s",
            manifest.id,
            manifest.checksum,
            actual,
        )
        raise IntegrityViolationError(
            "Upgrade manifest failed its checksum verification",
            details={"manifest_id": manifest.id},
        )


async def create_manifest(
    session: AsyncSession,
    *,
    from_version: str,
    to_version: str,
    config_changes: list[dict[str, Any]],
    description: str | None = None,
    upgrade_type: str = "minor",
    is_mandatory: bool = False,
    release_date: datetime | None = None,
    release_notes: str | None = None,
    deprecations: list[dict[str, Any]] | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> tuple[UpgradeManifest, bool]:
    """Store an immutable manifest; returns (manifest, created)."""
    if not from_version or not to_version:
        raise ValidationError("from_version and to_version are required")
    if platform_service.compare_versions(from_version, to_version) >= 0:
        raise ValidationError(
            "to_version must be newer than from_version",
            details={"from_version": from_version, "to_version": to_version},
        )
    if upgrade_type not in UPGRADE_TYPES:
        raise ValidationError(f"Unsupported upgrade_type '{upgrade_type}'")

    changes = [_normalize_change(item) for item in config_changes or []]
    seen: set[tuple[str, str]] = set()
    for change in changes:
        key = (change["config_type"], change["resource_key"])
        if key in seen:
            raise ValidationError(
                "Duplicate config change for resource",
                details={"config_type": key[0], "resource_key": key[1]},
            )
        seen.add(key)
    changes.sort(key=lambda item: (item["config_type"], item["resource_key"]))
    normalized_deprecations = [_normalize_deprecation(item) for item in deprecations or []]
    digest = manifest_checksum(changes)

    async with unit_of_work(session, commit=commit):
        existing = await manifests_repo.get_by_versions(
            session,
            from_version=from_version,
            to_version=to_version,
        )
        if existing is not None:
            if existing.checksum == digest:
                return existing, False
            raise ConflictError(
                "A different manifest already exists for these versions",
                details={"manifest_id": existing.id, "checksum": existing.checksum},
            )
        row = UpgradeManifest(
            id=uuid4().hex,
            from_version=from_version,
            to_version=to_version,
            config_changes=changes,
            checksum=digest,
            description=description,
            upgrade_type=upgrade_type,
            is_mandatory=is_mandatory,
            release_date=release_date,
            release_notes=release_notes,
            deprecations=normalized_deprecations,
            created_by=created_by,
        )
        session.add(row)
        await session.flush()

    logger.info(
        "manifest_created manifest_id=%s from_version=%s to_version=%s changes=%s checksum=%s",
        row.id,
        from_version,
        to_version,
        len(changes),
        digest,
    )
    return row, True


async def build_changes(
    session: AsyncSession,
    *,
    from_version: str,
    to_version: str,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Derive config changes (and deprecation notices) from published snapshots."""
    before = await platform_service.catalog_as_of(session, platform_version=from_version)
    after = await platform_service.catalog_as_of(session, platform_version=to_version)
    changes: list[dict[str, Any]] = []
    deprecations: list[dict[str, Any]] = []
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        old_body = platform_service.live_body(old)
        new_body = platform_service.live_body(new)
        if old_body is None and new_body is None:
            continue
        if old_body is None:
            change_type = CHANGE_ADDED
        elif new_body is None:
            change_type = CHANGE_REMOVED
        elif new.status == platform_service.SNAPSHOT_STATUS_DEPRECATED and old.status != new.status:
            change_type = CHANGE_DEPRECATED
        elif old.checksum != new.checksum:
            change_type = CHANGE_MODIFIED
        else:
            continue
        old_value = MISSING if old_body is None else old_body
        new_value = MISSING if new_body is None else new_body
        ops = diff(old_value, new_value)
        changes.append(
            {
                "config_type": key[0],
                "resource_key": key[1],
                "change_type": change_type,
                "previous_checksum": old.checksum if old_body is not None else None,
                "new_checksum": new.checksum if new_body is not None else None,
                "diff": ops_to_json(ops),
                "impact_level": default_impact_level(change_type, ops, old_value),
            }
        )
        if change_type == CHANGE_DEPRECATED:
            deprecations.append(
                {
                    "code": "RESOURCE_DEPRECATED",
                    "resource": f"{key[0]}/{key[1]}",
                    "message": new.description or f"{key[0]}/{key[1]} is deprecated in {to_version}",
                    "removal_version": None,
                    "replacement": None,
                }
            )
    return changes, deprecations


async def build_manifest(
    session: AsyncSession,
    *,
    from_version: str,
    to_version: str,
    description: str | None = None,
    upgrade_type: str = "minor",
    is_mandatory: bool = False,
    release_date: datetime | None = None,
    release_notes: str | None = None,
    deprecations: list[dict[str, Any]] | None = None,
    created_by: str | None = None,
    commit: bool = True,
) -> tuple[UpgradeManifest, bool]:
    changes, derived_deprecations = await build_changes(
        session,
        from_version=from_version,
        to_version=to_version,
    )
    return await create_manifest(
        session,
        from_version=from_version,
        to_version=to_version,
        config_changes=changes,
        description=description,
        upgrade_type=upgrade_type,
        is_mandatory=is_mandatory,
        release_date=release_date,
        release_notes=release_notes,
        deprecations=[*(deprecations or []), *derived_deprecations],
        created_by=created_by,
        commit=commit,
    )


async def get_manifest(session: AsyncSession, manifest_id: str) -> UpgradeManifest:
    row = await manifests_repo.get_by_id(session, manifest_id)
    if row is None:
        raise NotFoundError("Upgrade manifest not found", details={"manifest_id": manifest_id})
    return row


async def list_manifests(
    session: AsyncSession,
    *,
    from_version: str | None = None,
    to_version: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[UpgradeManifest]:
    return await manifests_repo.list_manifests(
        session,
        from_version=from_version,
        to_version=to_version,
        offset=offset,
        limit=limit,
    )
