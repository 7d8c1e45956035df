from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.config import get_settings
from upgradeguard.core.errors import ConflictError, NotFoundError, StateError, UpgradeGuardError, ValidationError
from upgradeguard.domain.actor import CHANGE_SOURCE_UPGRADE, ActorContext
from upgradeguard.domain.models import ConfigChangeHistory, TenantUpgradeImpact
from upgradeguard.merge.canonical import MISSING
from upgradeguard.merge.differ import diff, ops_to_json
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import customizations as customizations_repo
from upgradeguard.persistence.repos import impacts as impacts_repo
from upgradeguard.persistence.repos import platform_versions as platform_versions_repo
from upgradeguard.services import customizations as customization_service
from upgradeguard.services import history as history_service
from upgradeguard.services import impact_analysis as analysis
from upgradeguard.services import manifests as manifest_service
from upgradeguard.services.governance import GovernanceService, get_governance
from upgradeguard.services.upgrade_summary import TERMINAL_STATUSES, marker_state


logger = logging.getLogger(__name__)

CHOICE_USE_PLATFORM = "use_platform"
CHOICE_KEEP_TENANT = "keep_tenant"
CHOICE_CUSTOM_MERGE = "custom_merge"
CHOICE_AUTO_MERGE = "auto_merge"
RESOLUTION_CHOICES = (CHOICE_USE_PLATFORM, CHOICE_KEEP_TENANT, CHOICE_CUSTOM_MERGE, CHOICE_AUTO_MERGE)

LEGAL_CHOICES: dict[str, frozenset[str]] = {
    analysis.IMPACT_CONFLICT: frozenset({CHOICE_USE_PLATFORM, CHOICE_KEEP_TENANT, CHOICE_CUSTOM_MERGE}),
    analysis.IMPACT_OVERRIDE_AFFECTED: frozenset(RESOLUTION_CHOICES),
    analysis.IMPACT_EXTENSION_AFFECTED: frozenset(RESOLUTION_CHOICES),
    analysis.IMPACT_DEPRECATED: frozenset({CHOICE_USE_PLATFORM, CHOICE_KEEP_TENANT, CHOICE_CUSTOM_MERGE}),
    analysis.IMPACT_REMOVED: frozenset({CHOICE_USE_PLATFORM}),
    analysis.IMPACT_NEW_AVAILABLE: frozenset({CHOICE_USE_PLATFORM}),
}

# Fields reset when an impact is reopened.
_RESOLUTION_FIELDS = (
    "resolution_choice",
    "custom_resolution_value",
    "resolution_notes",
    "resolved_by",
    "resolved_at",
    "auto_resolved",
)


def legal_choices(impact_type: str) -> frozenset[str]:
    return LEGAL_CHOICES.get(impact_type, frozenset())


def _present(value: Any) -> Any:
    return MISSING if value is None else value


def _auto_merge_value(impact: TenantUpgradeImpact) -> Any:
    if impact.conflicts:
        raise ValidationError(
            "Auto merge is not possible while conflicts exist",
            details={"impact_id": impact.id, "conflicts": len(impact.conflicts)},
        )
    if impact.preview_merged_value is not None:
        return impact.preview_merged_value
    outcome = analysis.three_way_merge(
        _present(impact.current_platform_value),
        _present(impact.new_platform_value),
        _present(impact.current_tenant_value),
    )
    if outcome.conflicts or outcome.preview is MISSING:
        raise ValidationError("Auto merge is not possible while conflicts exist", details={"impact_id": impact.id})
    return outcome.preview


def _strategy_value(
    impact: TenantUpgradeImpact,
    strategy: str,
    custom_value: Any,
    governance: GovernanceService,
) -> Any:
    if strategy == CHOICE_USE_PLATFORM:
        return impact.new_platform_value
    if strategy == CHOICE_KEEP_TENANT:
        return impact.current_tenant_value
    if strategy == CHOICE_CUSTOM_MERGE:
        if custom_value is MISSING or custom_value is None:
            raise ValidationError("custom_merge requires a custom value")
        return governance.validate_body(
            config_type=impact.config_type,
            resource_key=impact.resource_key,
            body=custom_value,
            platform_body=impact.new_platform_value,
        )
    return _auto_merge_value(impact)


async def preview_merge(
    session: AsyncSession,
    *,
    tenant_id: str,
    impact_id: str,
    strategy: str,
    custom_value: Any = MISSING,
    governance: GovernanceService | None = None,
) -> dict[str, Any]:
    """Show what a strategy would produce without writing anything."""
    if strategy not in RESOLUTION_CHOICES:
        raise ValidationError(f"Unsupported resolution strategy '{strategy}'")
    impact = await analysis.get_impact(session, tenant_id=tenant_id, impact_id=impact_id)
    value = _strategy_value(impact, strategy, custom_value, governance or get_governance())
    return {
        "impact_id": impact.id,
        "strategy": strategy,
        "allowed": strategy in legal_choices(impact.impact_type),
        "value": value,
        "diff_from_tenant": ops_to_json(diff(_present(impact.current_tenant_value), _present(value))),
        "diff_from_platform": ops_to_json(diff(_present(impact.new_platform_value), _present(value))),
    }


async def _materialize(
    session: AsyncSession,
    *,
    actor: ActorContext,
    impact: TenantUpgradeImpact,
    to_version: str,
    choice: str,
    value: Any,
    governance: GovernanceService,
) -> ConfigChangeHistory | None:
    """Apply the chosen value through the customization store; returns its history entry."""
    active = await customizations_repo.get_active(
        session,
        tenant_id=actor.tenant_id,
        config_type=impact.config_type,
        resource_key=impact.resource_key,
    )
    if choice == CHOICE_USE_PLATFORM and active is None:
        # Nothing left to drop; the tenant already follows the platform.
        return None
    if impact.customization_id is not None and (active is None or active.id != impact.customization_id):
        raise ConflictError(
            "Customization changed since analysis; re-run the analysis",
            current_version=active.version if active is not None else None,
            details={"impact_id": impact.id, "customization_id": impact.customization_id},
        )
    if choice == CHOICE_USE_PLATFORM:
        # Dropping the customization lets the tenant follow the platform default.
        return await customization_service.retire(
            session,
            actor=actor,
            current=active,
            reason=f"Resolved upgrade impact {impact.id} with {choice}",
        )
    if active is None:
        raise StateError(
            f"Strategy '{choice}' needs an active customization",
            details={"impact_id": impact.id},
        )
    _, entry = await customization_service.rebase_version(
        session,
        actor=actor,
        current=active,
        body=value,
        # Tenant-only resources stay unbased; everything else rebases onto the target release.
        base_platform_version=None if active.kind == customization_service.KIND_NEW else to_version,
        description=active.description,
        governance=governance,
    )
    return entry


async def _finish(
    session: AsyncSession,
    *,
    actor: ActorContext,
    impact: TenantUpgradeImpact,
    status: str,
    values: dict[str, Any],
    customization_entry: ConfigChangeHistory | None,
    change_reason: str | None = None,
) -> TenantUpgradeImpact:
    before_state = analysis.impact_state(impact)
    updated = await impacts_repo.compare_and_set(
        session,
        tenant_id=actor.tenant_id,
        impact_id=impact.id,
        expected_row_version=impact.row_version,
        values={**values, "status": status},
    )
    if not updated:
        raise ConflictError(
            "Impact record was modified concurrently",
            current_version=impact.row_version,
            details={"impact_id": impact.id},
        )
    await session.refresh(impact)
    await history_service.record_change(
        session,
        actor=actor,
        entity_type=history_service.ENTITY_UPGRADE_IMPACT,
        entity_id=impact.id,
        change_type=history_service.CHANGE_UPDATE,
        before_state=before_state,
        after_state=analysis.impact_state(impact),
        config_type=impact.config_type,
        resource_key=impact.resource_key,
        change_reason=change_reason,
        metadata={
            "manifest_id": impact.upgrade_manifest_id,
            "status": status,
            "resolution_choice": impact.resolution_choice,
            "customization_history_id": customization_entry.id if customization_entry is not None else None,
        },
    )
    return impact


def _check_expected(impact: TenantUpgradeImpact, expected_row_version: int | None) -> None:
    if expected_row_version is not None and expected_row_version != impact.row_version:
        raise ConflictError(
            "Impact record was modified since it was read",
            current_version=impact.row_version,
            details={"impact_id": impact.id, "expected_row_version": expected_row_version},
        )


async def resolve_impact(
    session: AsyncSession,
    *,
    actor: ActorContext,
    impact_id: str,
    choice: str,
    custom_value: Any = MISSING,
    notes: str | None = None,
    expected_row_version: int | None = None,
    governance: GovernanceService | None = None,
    commit: bool = True,
) -> TenantUpgradeImpact:
    if choice not in RESOLUTION_CHOICES:
        raise ValidationError(f"Unsupported resolution choice '{choice}'")
    governance = governance or get_governance()
    upgrade_actor = actor.with_source(CHANGE_SOURCE_UPGRADE)

    async with unit_of_work(session, commit=commit):
        impact = await analysis.get_impact(session, tenant_id=actor.tenant_id, impact_id=impact_id)
        if choice not in legal_choices(impact.impact_type):
            raise ValidationError(
                f"Choice '{choice}' is not allowed for impact type '{impact.impact_type}'",
                details={"allowed": sorted(legal_choices(impact.impact_type))},
            )
        if impact.status in TERMINAL_STATUSES:
            raise StateError(
                f"Impact is already {impact.status}",
                details={"impact_id": impact.id, "status": impact.status},
            )
        if impact.status != analysis.STATUS_ANALYZED:
            raise StateError(
                "Impact has not been analyzed yet",
                details={"impact_id": impact.id, "status": impact.status},
            )
        _check_expected(impact, expected_row_version)

        manifest = await manifest_service.get_manifest(session, impact.upgrade_manifest_id)
        value = _strategy_value(impact, choice, custom_value, governance)
        customization_entry = await _materialize(
            session,
            actor=upgrade_actor,
            impact=impact,
            to_version=manifest.to_version,
            choice=choice,
            value=value,
            governance=governance,
        )
        await _finish(
            session,
            actor=upgrade_actor,
            impact=impact,
            status=analysis.STATUS_RESOLVED,
            values={
                "resolution_choice": choice,
                "custom_resolution_value": value if choice == CHOICE_CUSTOM_MERGE else None,
                "resolution_notes": notes,
                "resolved_by": actor.actor_id,
                "resolved_at": datetime.now(timezone.utc),
                "auto_resolved": False,
            },
            customization_entry=customization_entry,
            change_reason=notes,
        )

    logger.info(
        "impact_resolved tenant_id=%s impact_id=%s choice=%s actor_id=%s",
        actor.tenant_id,
        impact_id,
        choice,
        actor.actor_id,
    )
    return impact


async def auto_resolve(
    session: AsyncSession,
    *,
    actor: ActorContext,
    impact_id: str,
    expected_row_version: int | None = None,
    governance: GovernanceService | None = None,
    commit: bool = True,
) -> TenantUpgradeImpact:
    governance = governance or get_governance()
    upgrade_actor = actor.with_source(CHANGE_SOURCE_UPGRADE)

    async with unit_of_work(session, commit=commit):
        impact = await analysis.get_impact(session, tenant_id=actor.tenant_id, impact_id=impact_id)
        if impact.status == analysis.STATUS_AUTO_RESOLVED:
            return impact
        if impact.status != analysis.STATUS_ANALYZED:
            raise StateError(
                f"Impact in status '{impact.status}' cannot be auto-resolved",
                details={"impact_id": impact.id, "status": impact.status},
            )
        if impact.suggested_resolution != analysis.SUGGEST_AUTO_MERGE or impact.conflicts:
            raise StateError(
                "Impact needs a manual decision",
                details={"impact_id": impact.id, "suggested_resolution": impact.suggested_resolution},
            )
        _check_expected(impact, expected_row_version)

        manifest = await manifest_service.get_manifest(session, impact.upgrade_manifest_id)
        value = _auto_merge_value(impact)
        customization_entry = await _materialize(
            session,
            actor=upgrade_actor,
            impact=impact,
            to_version=manifest.to_version,
            choice=CHOICE_AUTO_MERGE,
            value=value,
            governance=governance,
        )
        await _finish(
            session,
            actor=upgrade_actor,
            impact=impact,
            status=analysis.STATUS_AUTO_RESOLVED,
            values={
                "resolution_choice": CHOICE_AUTO_MERGE,
                "custom_resolution_value": None,
                "resolution_notes": None,
                "resolved_by": actor.actor_id,
                "resolved_at": datetime.now(timezone.utc),
                "auto_resolved": True,
            },
            customization_entry=customization_entry,
        )

    logger.info("impact_auto_resolved tenant_id=%s impact_id=%s", actor.tenant_id, impact_id)
    return impact


async def auto_resolve_all(
    session: AsyncSession,
    *,
    actor: ActorContext,
    manifest_id: str,
) -> dict[str, Any]:
    """Auto-resolve every clean record of a manifest, one transaction per record."""
    candidates = await impacts_repo.list_impacts(
        session,
        tenant_id=actor.tenant_id,
        manifest_id=manifest_id,
        status=analysis.STATUS_ANALYZED,
    )
    impact_ids = [
        impact.id
        for impact in candidates
        if impact.suggested_resolution == analysis.SUGGEST_AUTO_MERGE and not impact.conflicts
    ]
    # Close the read transaction so every record commits independently.
    await session.commit()

    resolved: list[str] = []
    failed: list[dict[str, Any]] = []
    for impact_id in impact_ids:
        try:
            await auto_resolve(session, actor=actor, impact_id=impact_id)
        except UpgradeGuardError as exc:
            logger.warning(
                "impact_auto_resolve_failed tenant_id=%s impact_id=%s code=%s",
                actor.tenant_id,
                impact_id,
                exc.code,
            )
            failed.append({"impact_id": impact_id, "code": exc.code, "message": exc.message})
            continue
        resolved.append(impact_id)
    logger.info(
        "impact_auto_resolve_batch tenant_id=%s manifest_id=%s resolved=%s failed=%s",
        actor.tenant_id,
        manifest_id,
        len(resolved),
        len(failed),
    )
    return {"resolved": resolved, "failed": failed}


async def acknowledge(
    session: AsyncSession,
    *,
    actor: ActorContext,
    impact_id: str,
    notes: str | None = None,
    expected_row_version: int | None = None,
    commit: bool = True,
) -> TenantUpgradeImpact:
    upgrade_actor = actor.with_source(CHANGE_SOURCE_UPGRADE)
    async with unit_of_work(session, commit=commit):
        impact = await analysis.get_impact(session, tenant_id=actor.tenant_id, impact_id=impact_id)
        closable = impact.status in (analysis.STATUS_RESOLVED, analysis.STATUS_AUTO_RESOLVED) or (
            impact.status == analysis.STATUS_ANALYZED
            and impact.suggested_resolution == analysis.SUGGEST_ACKNOWLEDGE
        )
        if not closable:
            raise StateError(
                f"Impact in status '{impact.status}' cannot be acknowledged",
                details={"impact_id": impact.id, "status": impact.status},
            )
        _check_expected(impact, expected_row_version)
        values: dict[str, Any] = {}
        if impact.status == analysis.STATUS_ANALYZED:
            values = {"resolved_by": actor.actor_id, "resolved_at": datetime.now(timezone.utc)}
        if notes is not None:
            values["resolution_notes"] = notes
        await _finish(
            session,
            actor=upgrade_actor,
            impact=impact,
            status=analysis.STATUS_ACKNOWLEDGED,
            values=values,
            customization_entry=None,
            change_reason=notes,
        )

    logger.info("impact_acknowledged tenant_id=%s impact_id=%s", actor.tenant_id, impact_id)
    return impact


async def apply_upgrade(
    session: AsyncSession,
    *,
    actor: ActorContext,
    manifest_id: str,
    commit: bool = True,
) -> dict[str, Any]:
    """Advance the tenant's platform version once nothing blocks the manifest."""
    upgrade_actor = actor.with_source(CHANGE_SOURCE_UPGRADE)
    settings = get_settings()
    blocking_levels = settings.blocking_severities()

    async with unit_of_work(session, commit=commit):
        manifest = await manifest_service.get_manifest(session, manifest_id)
        manifest_service.verify_manifest(manifest)
        marker = await platform_versions_repo.ensure_marker(
            session,
            tenant_id=actor.tenant_id,
            default_version=settings.default_platform_version,
        )
        if marker.platform_version != manifest.from_version:
            raise StateError(
                "Tenant is not on the manifest's starting version",
                details={
                    "current_version": marker.platform_version,
                    "from_version": manifest.from_version,
                    "to_version": manifest.to_version,
                },
            )

        impacts = await impacts_repo.list_impacts(session, tenant_id=actor.tenant_id, manifest_id=manifest.id)
        by_resource = {(impact.config_type, impact.resource_key): impact for impact in impacts}
        blockers: list[dict[str, Any]] = []
        for change in manifest.config_changes or []:
            key = (change["config_type"], change["resource_key"])
            if key in by_resource:
                continue
            customization = await customizations_repo.get_active(
                session,
                tenant_id=actor.tenant_id,
                config_type=key[0],
                resource_key=key[1],
            )
            if customization is not None and analysis.requires_impact_record(change["change_type"], customization):
                blockers.append(
                    {
                        "config_type": key[0],
                        "resource_key": key[1],
                        "reason": "not_analyzed",
                    }
                )
        for impact in impacts:
            if impact.impact_severity in blocking_levels and impact.status not in TERMINAL_STATUSES:
                blockers.append(
                    {
                        "impact_id": impact.id,
                        "config_type": impact.config_type,
                        "resource_key": impact.resource_key,
                        "impact_severity": impact.impact_severity,
                        "status": impact.status,
                        "reason": "unresolved",
                    }
                )
        if blockers:
            logger.warning(
                "upgrade_blocked tenant_id=%s manifest_id=%s blockers=%s",
                actor.tenant_id,
                manifest.id,
                len(blockers),
            )
            raise StateError("Upgrade is blocked by unresolved impacts", blockers=blockers)

        before_state = marker_state(marker)
        advanced = await platform_versions_repo.compare_and_set(
            session,
            tenant_id=actor.tenant_id,
            expected_row_version=marker.row_version,
            values={
                "platform_version": manifest.to_version,
                "previous_platform_version": manifest.from_version,
                "last_manifest_id": manifest.id,
                "upgraded_by": actor.actor_id,
                "upgraded_at": datetime.now(timezone.utc),
            },
        )
        if not advanced:
            raise ConflictError("Platform version changed concurrently", current_version=marker.row_version)
        await session.refresh(marker)
        entry = await history_service.record_change(
            session,
            actor=upgrade_actor,
            entity_type=history_service.ENTITY_PLATFORM_VERSION,
            entity_id=actor.tenant_id,
            change_type=history_service.CHANGE_UPDATE,
            before_state=before_state,
            after_state=marker_state(marker),
            metadata={
                "manifest_id": manifest.id,
                "from_version": manifest.from_version,
                "to_version": manifest.to_version,
            },
        )

    logger.info(
        "upgrade_applied tenant_id=%s manifest_id=%s from_version=%s to_version=%s",
        actor.tenant_id,
        manifest.id,
        manifest.from_version,
        manifest.to_version,
    )
    return {
        "tenant_id": actor.tenant_id,
        "manifest_id": manifest.id,
        "previous_version": manifest.from_version,
        "current_version": manifest.to_version,
        "history_id": entry.id,
        "marker": marker_state(marker),
    }


async def restore_impact_state(
    session: AsyncSession,
    *,
    tenant_id: str,
    impact_id: str,
    expected_state: dict[str, Any] | None,
    target_state: dict[str, Any] | None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Reopen an impact at its earlier status if nothing touched it since ``expected_state``."""
    impact = await impacts_repo.get_by_id(session, tenant_id=tenant_id, impact_id=impact_id)
    if impact is None:
        raise NotFoundError("Impact record not found", details={"impact_id": impact_id})
    if not expected_state or not target_state:
        raise StateError("Impact history entry has no state to restore", details={"impact_id": impact_id})
    if impact.row_version != expected_state.get("row_version"):
        raise ConflictError(
            "Impact changed after this history entry; roll back newer changes first",
            current_version=impact.row_version,
            details={"impact_id": impact_id},
        )
    before_state = analysis.impact_state(impact)
    values: dict[str, Any] = {"status": target_state.get("status", analysis.STATUS_ANALYZED)}
    for field_name in _RESOLUTION_FIELDS:
        values[field_name] = target_state.get(field_name)
    values["auto_resolved"] = bool(values["auto_resolved"])
    if values["resolved_at"]:
        values["resolved_at"] = datetime.fromisoformat(values["resolved_at"])
    updated = await impacts_repo.compare_and_set(
        session,
        tenant_id=tenant_id,
        impact_id=impact_id,
        expected_row_version=impact.row_version,
        values=values,
    )
    if not updated:
        raise ConflictError("Impact record was modified concurrently", current_version=impact.row_version)
    await session.refresh(impact)
    return before_state, analysis.impact_state(impact)


async def restore_marker_state(
    session: AsyncSession,
    *,
    tenant_id: str,
    expected_state: dict[str, Any],
    target_state: dict[str, Any],
) -> tuple[dict[str, Any], dict[str, Any]]:
    marker = await platform_versions_repo.get_marker(session, tenant_id)
    if marker is None:
        raise NotFoundError("Tenant platform version not found", details={"tenant_id": tenant_id})
    if marker.row_version != expected_state.get("row_version"):
        raise ConflictError(
            "Platform version changed after this history entry; roll back newer changes first",
            current_version=marker.row_version,
            details={"platform_version": marker.platform_version},
        )
    before_state = marker_state(marker)
    upgraded_at = target_state.get("upgraded_at")
    restored = await platform_versions_repo.compare_and_set(
        session,
        tenant_id=tenant_id,
        expected_row_version=marker.row_version,
        values={
            "platform_version": target_state["platform_version"],
            "previous_platform_version": target_state.get("previous_platform_version"),
            "last_manifest_id": target_state.get("last_manifest_id"),
            "upgraded_by": target_state.get("upgraded_by"),
            "upgraded_at": datetime.fromisoformat(upgraded_at) if upgraded_at else None,
        },
    )
    if not restored:
        raise ConflictError("Platform version changed concurrently", current_version=marker.row_version)
    await session.refresh(marker)
    return before_state, marker_state(marker)
