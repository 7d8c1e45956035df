from __future__ import annotations

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.domain.models import TenantUpgradeImpact, utc_now
from upgradeguard.persistence.guards import tenant_predicate


async def get_by_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    impact_id: str,
) -> TenantUpgradeImpact | None:
    result = await session.execute(
        select(TenantUpgradeImpact).where(
            tenant_predicate(TenantUpgradeImpact, tenant_id),
            TenantUpgradeImpact.id == impact_id,
        )
    )
    return result.scalar_one_or_none()


async def get_for_resource(
    session: AsyncSession,
    *,
    tenant_id: str,
    manifest_id: str,
    config_type: str,
    resource_key: str,
) -> TenantUpgradeImpact | None:
    result = await session.execute(
        select(TenantUpgradeImpact).where(
            tenant_predicate(TenantUpgradeImpact, tenant_id),
            TenantUpgradeImpact.upgrade_manifest_id == manifest_id,
            TenantUpgradeImpact.config_type == config_type,
            TenantUpgradeImpact.resource_key == resource_key,
        )
    )
    return result.scalar_one_or_none()


async def list_impacts(
    session: AsyncSession,
    *,
    tenant_id: str,
    manifest_id: str | None = None,
    status: str | None = None,
    impact_type: str | None = None,
    severity: str | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> list[TenantUpgradeImpact]:
    stmt = select(TenantUpgradeImpact).where(tenant_predicate(TenantUpgradeImpact, tenant_id))
    if manifest_id:
        stmt = stmt.where(TenantUpgradeImpact.upgrade_manifest_id == manifest_id)
    if status:
        stmt = stmt.where(TenantUpgradeImpact.status == status)
    if impact_type:
        stmt = stmt.where(TenantUpgradeImpact.impact_type == impact_type)
    if severity:
        stmt = stmt.where(TenantUpgradeImpact.impact_severity == severity)
    stmt = stmt.order_by(
        TenantUpgradeImpact.config_type.asc(),
        TenantUpgradeImpact.resource_key.asc(),
    )
    stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(
    session: AsyncSession,
    *,
    tenant_id: str,
    statuses: tuple[str, ...],
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(TenantUpgradeImpact)
        .where(
            tenant_predicate(TenantUpgradeImpact, tenant_id),
            TenantUpgradeImpact.status.in_(statuses),
        )
    )
    return int(result.scalar_one())


async def compare_and_set(
    session: AsyncSession,
    *,
    tenant_id: str,
    impact_id: str,
    expected_row_version: int,
    values: dict[str, Any],
) -> bool:
    # Optimistic write: only succeeds if nobody bumped row_version since the read.
    result = await session.execute(
        update(TenantUpgradeImpact)
        .where(
            tenant_predicate(TenantUpgradeImpact, tenant_id),
            TenantUpgradeImpact.id == impact_id,
            TenantUpgradeImpact.row_version == expected_row_version,
        )
        .values(**values, row_version=expected_row_version + 1, updated_at=utc_now())
        .execution_options(synchronize_session="fetch")
    )
    return (result.rowcount or 0) == 1
