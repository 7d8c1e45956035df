from __future__ import annotations

from typing import Any

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.domain.models import TenantPlatformVersion, utc_now
from upgradeguard.persistence.guards import require_tenant_id, tenant_predicate


async def get_marker(session: AsyncSession, tenant_id: str) -> TenantPlatformVersion | None:
    require_tenant_id(tenant_id)
    return await session.get(TenantPlatformVersion, tenant_id)


async def ensure_marker(
    session: AsyncSession,
    *,
    tenant_id: str,
    default_version: str,
) -> TenantPlatformVersion:
    existing = await get_marker(session, tenant_id)
    if existing is not None:
        return existing
    # Race-safe insert: a concurrent first read may create the row first.
    dialect = session.get_bind().dialect.name
    insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = insert_fn(TenantPlatformVersion).values(
        tenant_id=tenant_id,
        platform_version=default_version,
        row_version=1,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[TenantPlatformVersion.tenant_id])
    await session.execute(stmt)
    created = await session.get(TenantPlatformVersion, tenant_id, populate_existing=True)
    if created is None:
        raise RuntimeError("tenant platform version insert failed unexpectedly")
    return created


async def compare_and_set(
    session: AsyncSession,
    *,
    tenant_id: str,
    expected_row_version: int,
    values: dict[str, Any],
) -> bool:
    result = await session.execute(
        update(TenantPlatformVersion)
        .where(
            tenant_predicate(TenantPlatformVersion, tenant_id),
            TenantPlatformVersion.row_version == expected_row_version,
        )
        .values(**values, row_version=expected_row_version + 1, updated_at=utc_now())
        .execution_options(synchronize_session="fetch")
    )
    return (result.rowcount or 0) == 1
