from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.domain.models import TenantCustomization, utc_now
from upgradeguard.persistence.guards import tenant_predicate


async def get_by_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    customization_id: str,
) -> TenantCustomization | None:
    # Scope by tenant so a foreign id behaves exactly like a missing one.
    result = await session.execute(
        select(TenantCustomization).where(
            tenant_predicate(TenantCustomization, tenant_id),
            TenantCustomization.id == customization_id,
        )
    )
    return result.scalar_one_or_none()


async def get_active(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str,
    resource_key: str,
) -> TenantCustomization | None:
    result = await session.execute(
        select(TenantCustomization).where(
            tenant_predicate(TenantCustomization, tenant_id),
            TenantCustomization.config_type == config_type,
            TenantCustomization.resource_key == resource_key,
            TenantCustomization.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_latest(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str,
    resource_key: str,
) -> TenantCustomization | None:
    # Highest version in the scope, active or not.
    result = await session.execute(
        select(TenantCustomization)
        .where(
            tenant_predicate(TenantCustomization, tenant_id),
            TenantCustomization.config_type == config_type,
            TenantCustomization.resource_key == resource_key,
        )
        .order_by(TenantCustomization.version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_scope_versions(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str,
    resource_key: str,
) -> list[TenantCustomization]:
    result = await session.execute(
        select(TenantCustomization)
        .where(
            tenant_predicate(TenantCustomization, tenant_id),
            TenantCustomization.config_type == config_type,
            TenantCustomization.resource_key == resource_key,
        )
        .order_by(TenantCustomization.version.asc())
    )
    return list(result.scalars().all())


async def list_customizations(
    session: AsyncSession,
    *,
    tenant_id: str,
    config_type: str | None = None,
    resource_key: str | None = None,
    kind: str | None = None,
    is_active: bool | None = True,
    offset: int = 0,
    limit: int = 50,
) -> list[TenantCustomization]:
    stmt = select(TenantCustomization).where(tenant_predicate(TenantCustomization, tenant_id))
    if config_type:
        stmt = stmt.where(TenantCustomization.config_type == config_type)
    if resource_key:
        stmt = stmt.where(TenantCustomization.resource_key == resource_key)
    if kind:
        stmt = stmt.where(TenantCustomization.kind == kind)
    if is_active is not None:
        stmt = stmt.where(TenantCustomization.is_active.is_(is_active))
    stmt = stmt.order_by(
        TenantCustomization.config_type.asc(),
        TenantCustomization.resource_key.asc(),
        TenantCustomization.version.desc(),
    )
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_active(session: AsyncSession, *, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(TenantCustomization)
        .where(
            tenant_predicate(TenantCustomization, tenant_id),
            TenantCustomization.is_active.is_(True),
        )
    )
    return int(result.scalar_one())


async def deactivate_if_active(
    session: AsyncSession,
    *,
    tenant_id: str,
    customization_id: str,
    actor_id: str | None,
) -> bool:
    # Compare-and-set on is_active so two writers cannot both retire the same row.
    result = await session.execute(
        update(TenantCustomization)
        .where(
            tenant_predicate(TenantCustomization, tenant_id),
            TenantCustomization.id == customization_id,
            TenantCustomization.is_active.is_(True),
        )
        .values(is_active=False, updated_by=actor_id, updated_at=utc_now())
        .execution_options(synchronize_session="fetch")
    )
    return (result.rowcount or 0) == 1
