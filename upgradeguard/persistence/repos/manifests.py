from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.domain.models import UpgradeManifest


async def get_by_id(session: AsyncSession, manifest_id: str) -> UpgradeManifest | None:
    return await session.get(UpgradeManifest, manifest_id)


async def get_by_versions(
    session: AsyncSession,
    *,
    from_version: str,
    to_version: str,
) -> UpgradeManifest | None:
    result = await session.execute(
        select(UpgradeManifest).where(
            UpgradeManifest.from_version == from_version,
            UpgradeManifest.to_version == to_version,
        )
    )
    return result.scalar_one_or_none()


async def list_manifests(
    session: AsyncSession,
    *,
    from_version: str | None = None,
    to_version: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[UpgradeManifest]:
    stmt = select(UpgradeManifest)
    if from_version:
        stmt = stmt.where(UpgradeManifest.from_version == from_version)
    if to_version:
        stmt = stmt.where(UpgradeManifest.to_version == to_version)
    stmt = stmt.order_by(UpgradeManifest.created_at.desc(), UpgradeManifest.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
