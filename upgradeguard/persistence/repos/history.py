from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.domain.models import ConfigChangeHistory
from upgradeguard.persistence.guards import tenant_predicate


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    config_type: str | None = None,
    resource_key: str | None = None,
    change_type: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ConfigChangeHistory]:
    # Scope all history queries to a tenant to prevent cross-tenant leakage.
    stmt = select(ConfigChangeHistory).where(tenant_predicate(ConfigChangeHistory, tenant_id))
    if entity_type:
        stmt = stmt.where(ConfigChangeHistory.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(ConfigChangeHistory.entity_id == entity_id)
    if config_type:
        stmt = stmt.where(ConfigChangeHistory.config_type == config_type)
    if resource_key:
        stmt = stmt.where(ConfigChangeHistory.resource_key == resource_key)
    if change_type:
        stmt = stmt.where(ConfigChangeHistory.change_type == change_type)
    if created_from:
        stmt = stmt.where(ConfigChangeHistory.created_at >= created_from)
    if created_to:
        stmt = stmt.where(ConfigChangeHistory.created_at <= created_to)

    stmt = stmt.order_by(ConfigChangeHistory.created_at.desc(), ConfigChangeHistory.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry(
    session: AsyncSession,
    *,
    tenant_id: str,
    entry_id: str,
) -> ConfigChangeHistory | None:
    result = await session.execute(
        select(ConfigChangeHistory).where(
            tenant_predicate(ConfigChangeHistory, tenant_id),
            ConfigChangeHistory.id == entry_id,
        )
    )
    return result.scalar_one_or_none()


async def find_rollback_of(
    session: AsyncSession,
    *,
    tenant_id: str,
    entry_id: str,
) -> ConfigChangeHistory | None:
    result = await session.execute(
        select(ConfigChangeHistory)
        .where(
            tenant_predicate(ConfigChangeHistory, tenant_id),
            ConfigChangeHistory.rollback_of == entry_id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()
