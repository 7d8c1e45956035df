from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.domain.models import PlatformConfigSnapshot


async def get_snapshot(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    platform_version: str,
) -> PlatformConfigSnapshot | None:
    result = await session.execute(
        select(PlatformConfigSnapshot).where(
            PlatformConfigSnapshot.config_type == config_type,
            PlatformConfigSnapshot.resource_key == resource_key,
            PlatformConfigSnapshot.platform_version == platform_version,
        )
    )
    return result.scalar_one_or_none()


async def list_resource_snapshots(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
) -> list[PlatformConfigSnapshot]:
    # Every published version of one resource; callers order by version semantics.
    result = await session.execute(
        select(PlatformConfigSnapshot).where(
            PlatformConfigSnapshot.config_type == config_type,
            PlatformConfigSnapshot.resource_key == resource_key,
        )
    )
    return list(result.scalars().all())


async def find_by_checksum(
    session: AsyncSession,
    *,
    config_type: str,
    resource_key: str,
    checksum: str,
) -> PlatformConfigSnapshot | None:
    result = await session.execute(
        select(PlatformConfigSnapshot)
        .where(
            PlatformConfigSnapshot.config_type == config_type,
            PlatformConfigSnapshot.resource_key == resource_key,
            PlatformConfigSnapshot.checksum == checksum,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_snapshots(
    session: AsyncSession,
    *,
    config_type: str | None = None,
    resource_key: str | None = None,
    platform_version: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[PlatformConfigSnapshot]:
    stmt = select(PlatformConfigSnapshot)
    if config_type:
        stmt = stmt.where(PlatformConfigSnapshot.config_type == config_type)
    if resource_key:
        stmt = stmt.where(PlatformConfigSnapshot.resource_key == resource_key)
    if platform_version:
        stmt = stmt.where(PlatformConfigSnapshot.platform_version == platform_version)
    stmt = stmt.order_by(
        PlatformConfigSnapshot.config_type.asc(),
        PlatformConfigSnapshot.resource_key.asc(),
        PlatformConfigSnapshot.published_at.asc(),
    )
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_all_snapshots(session: AsyncSession) -> list[PlatformConfigSnapshot]:
    # Full catalog scan used when diffing two releases; version filtering happens in Python.
    result = await session.execute(
        select(PlatformConfigSnapshot).order_by(
            PlatformConfigSnapshot.config_type.asc(),
            PlatformConfigSnapshot.resource_key.asc(),
        )
    )
    return list(result.scalars().all())
