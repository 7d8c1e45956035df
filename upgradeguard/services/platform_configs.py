from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.errors import ConflictError, ValidationError
from upgradeguard.domain.models import PlatformConfigSnapshot
from upgradeguard.merge.canonical import canonicalize, checksum
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import platform_configs as snapshots_repo


logger = logging.getLogger(__name__)

SNAPSHOT_STATUS_ACTIVE = "active"
SNAPSHOT_STATUS_DEPRECATED = "deprecated"
SNAPSHOT_STATUS_REMOVED = "removed"
SNAPSHOT_STATUSES = (SNAPSHOT_STATUS_ACTIVE, SNAPSHOT_STATUS_DEPRECATED, SNAPSHOT_STATUS_REMOVED)


def version_key(version: str) -> tuple[tuple[int, Any], ...]:
    # Dotted ordering: numeric segments compare numerically and sort before text segments.
    parts: list[tuple[int, Any]] = []
    for segment in str(version).strip().split("."):
        if segment.isdigit():
            parts.append((0, int(segment)))
        else:
            parts.append((1, segment))
    return tuple(parts)


def compare_versions(left: str, right: str) -> int:
    left_key = version_key(left)
    right_key = version_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def serialize_snapshot(row: PlatformConfigSnapshot) -> dict[str, Any]:
    return {
        "id": row.id,
        "config_type": row.config_type,
        "resource_key": row.resource_key,
        "platform_version": row.platform_version,
        "schema_version": row.schema_version,
        "body": row.body,
        "checksum": row.checksum,
        "status": row.status,
        "is_extensible": row.is_extensible,
        "description": row.description,
        "published_by": row.published_by,
        "published_at": row.published_at.isoformat() if row.published_at else None,
    }


def _pick_as_of(
    rows: list[PlatformConfigSnapshot],
    as_of_version: str,
) -> PlatformConfigSnapshot | None:
    target = version_key(as_of_version)
    eligible = [row for row in rows if version_key(row.platform_version) <= target]
    if not eligible:
        return None
    return max(eligible, key=lambda row: version_key(row.platform_version))


async def publish_snapshot(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    platform_version: str,
    body: Any,
    schema_version: str = "1",
    status: str = SNAPSHOT_STATUS_ACTIVE,
    is_extensible: bool = False,
    description: str | None = None,
    published_by: str | None = None,
    commit: bool = True,
) -> tuple[PlatformConfigSnapshot, bool]:
    """Publish an immutable platform default; returns (snapshot, created)."""
    if status not in SNAPSHOT_STATUSES:
        raise ValidationError(f"Unsupported snapshot status '{status}'")
    if not config_type or not resource_key or not platform_version:
        raise ValidationError("config_type, resource_key and platform_version are required")
    if status == SNAPSHOT_STATUS_REMOVED:
        # Tombstones carry no body; the resource no longer exists in this release.
        normalized = None
    else:
        if body is None:
            raise ValidationError("Snapshot body is required unless status is 'removed'")
        normalized = canonicalize(body)
    digest = checksum(normalized)

    async with unit_of_work(session, commit=commit):
        existing = await snapshots_repo.get_snapshot(
            session,
            config_type=config_type,
            resource_key=resource_key,
            platform_version=platform_version,
        )
        if existing is not None:
            if existing.checksum == digest and existing.status == status:
                return existing, False
            raise ConflictError(
                "Platform snapshot already published with different content",
                details={
                    "config_type": config_type,
                    "resource_key": resource_key,
                    "platform_version": platform_version,
                    "checksum": existing.checksum,
                },
            )
        row = PlatformConfigSnapshot(
            id=uuid4().hex,
            config_type=config_type,
            resource_key=resource_key,
            platform_version=platform_version,
            schema_version=schema_version,
            body=normalized,
            checksum=digest,
            status=status,
            is_extensible=is_extensible,
            description=description,
            published_by=published_by,
        )
        session.add(row)
        await session.flush()

    logger.info(
        "platform_snapshot_published config_type=%s resource_key=%s platform_version=%s status=%s checksum=%s",
        config_type,
        resource_key,
        platform_version,
        status,
        digest,
    )
    return row, True


async def get_snapshot(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    platform_version: str,
) -> PlatformConfigSnapshot | None:
    return await snapshots_repo.get_snapshot(
        session,
        config_type=config_type,
        resource_key=resource_key,
        platform_version=platform_version,
    )


async def resolve_snapshot(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    as_of_version: str,
) -> PlatformConfigSnapshot | None:
    # Newest snapshot published at or before the requested release.
    rows = await snapshots_repo.list_resource_snapshots(
        session,
        config_type=config_type,
        resource_key=resource_key,
    )
    return _pick_as_of(rows, as_of_version)


def live_body(snapshot: PlatformConfigSnapshot | None) -> Any:
    # None when the resource does not exist (never published or tombstoned).
    if snapshot is None or snapshot.status == SNAPSHOT_STATUS_REMOVED:
        return None
    return snapshot.body


async def find_by_checksum(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    digest: str,
) -> PlatformConfigSnapshot | None:
    return await snapshots_repo.find_by_checksum(
        session,
        config_type=config_type,
        resource_key=resource_key,
        checksum=digest,
    )


async def list_snapshots(
    session: AsyncSession,
    *,
    config_type: str | None = None,
    resource_key: str | None = None,
    platform_version: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[PlatformConfigSnapshot]:
    return await snapshots_repo.list_snapshots(
        session,
        config_type=config_type,
        resource_key=resource_key,
        platform_version=platform_version,
        offset=offset,
        limit=limit,
    )


async def catalog_as_of(
    session: AsyncSession,
    *,
    platform_version: str,
) -> dict[tuple[str, str], PlatformConfigSnapshot]:
    """Map every resource to its effective snapshot at ``platform_version``."""
    grouped: dict[tuple[str, str], list[PlatformConfigSnapshot]] = {}
    for row in await snapshots_repo.list_all_snapshots(session):
        grouped.setdefault((row.config_type, row.resource_key), []).append(row)
    catalog: dict[tuple[str, str], PlatformConfigSnapshot] = {}
    for key, rows in grouped.items():
        picked = _pick_as_of(rows, platform_version)
        if picked is not None:
            catalog[key] = picked
    return catalog


async def list_resource_keys_changed_between(
    session: AsyncSession,
    *,
    from_version: str,
    to_version: str,
) -> list[tuple[str, str]]:
    before = await catalog_as_of(session, platform_version=from_version)
    after = await catalog_as_of(session, platform_version=to_version)
    changed: list[tuple[str, str]] = []
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if old is None or new is None:
            changed.append(key)
        elif old.checksum != new.checksum or old.status != new.status:
            changed.append(key)
    return changed
