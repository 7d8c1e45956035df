"""Three-way impact analysis of an upgrade manifest against tenant customizations.

For every resource a manifest touches, the analyzer compares the platform's
old body, the platform's new body and the tenant's body. Paths changed on both
sides with different outcomes become conflicts; everything else can be merged
automatically by replaying the platform's non-overlapping operations onto the
tenant body.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.config import SEVERITY_ORDER, get_settings
from upgradeguard.core.errors import ConflictError, IntegrityViolationError, NotFoundError, ValidationError
from upgradeguard.domain.actor import CHANGE_SOURCE_UPGRADE, ActorContext
from upgradeguard.domain.models import TenantCustomization, TenantUpgradeImpact, UpgradeManifest
from upgradeguard.merge.canonical import MISSING, canonical_json, json_type
from upgradeguard.merge.differ import (
    PatchOp,
    apply_patch,
    diff,
    get_at,
    ops_from_json,
    ops_to_json,
    parse_pointer,
    paths_overlap,
)
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import customizations as customizations_repo
from upgradeguard.persistence.repos import impacts as impacts_repo
from upgradeguard.services import history as history_service
from upgradeguard.services import manifests as manifest_service
from upgradeguard.services import platform_configs as platform_service
from upgradeguard.services.upgrade_summary import TERMINAL_STATUSES


logger = logging.getLogger(__name__)

IMPACT_CONFLICT = "conflict"
IMPACT_OVERRIDE_AFFECTED = "override_affected"
IMPACT_EXTENSION_AFFECTED = "extension_affected"
IMPACT_DEPRECATED = "deprecated"
IMPACT_REMOVED = "removed"
IMPACT_NEW_AVAILABLE = "new_available"

CONFLICT_VALUE_CHANGED = "value_changed"
CONFLICT_PROPERTY_REMOVED = "property_removed"
CONFLICT_PROPERTY_ADDED = "property_added"
CONFLICT_TYPE_MISMATCH = "type_mismatch"

SUGGEST_AUTO_MERGE = "auto_merge"
SUGGEST_MANUAL_REVIEW = "manual_review"
SUGGEST_ACKNOWLEDGE = "acknowledge"

STATUS_PENDING = "pending_analysis"
STATUS_ANALYZED = "analyzed"
STATUS_RESOLVED = "resolved"
STATUS_AUTO_RESOLVED = "auto_resolved"
STATUS_ACKNOWLEDGED = "acknowledged"


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def impact_state(row: TenantUpgradeImpact) -> dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "upgrade_manifest_id": row.upgrade_manifest_id,
        "customization_id": row.customization_id,
        "config_type": row.config_type,
        "resource_key": row.resource_key,
        "impact_type": row.impact_type,
        "impact_severity": row.impact_severity,
        "description": row.description,
        "current_tenant_value": row.current_tenant_value,
        "current_platform_value": row.current_platform_value,
        "new_platform_value": row.new_platform_value,
        "platform_diff": row.platform_diff,
        "conflicts": row.conflicts,
        "suggested_resolution": row.suggested_resolution,
        "preview_merged_value": row.preview_merged_value,
        "status": row.status,
        "resolution_choice": row.resolution_choice,
        "custom_resolution_value": row.custom_resolution_value,
        "resolution_notes": row.resolution_notes,
        "resolved_by": row.resolved_by,
        "resolved_at": _iso(row.resolved_at),
        "auto_resolved": row.auto_resolved,
        "integrity_error": row.integrity_error,
        "row_version": row.row_version,
        "analyzed_at": _iso(row.analyzed_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def max_severity(*levels: str | None) -> str:
    best = "none"
    for level in levels:
        if level and SEVERITY_ORDER.get(level, 0) > SEVERITY_ORDER[best]:
            best = level
    return best


def _same(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return left is right
    return canonical_json(left) == canonical_json(right)


def _stored(value: Any) -> Any:
    # JSON columns have no notion of an absent value.
    return None if value is MISSING else value


def classify_conflict(tenant_value: Any, old_value: Any, new_value: Any) -> str:
    if new_value is MISSING and tenant_value is not MISSING:
        return CONFLICT_PROPERTY_REMOVED
    if tenant_value is not MISSING and new_value is not MISSING and json_type(tenant_value) != json_type(new_value):
        return CONFLICT_TYPE_MISMATCH
    if old_value is MISSING:
        return CONFLICT_PROPERTY_ADDED
    return CONFLICT_VALUE_CHANGED


def _conflict_detail(path: str, tenant: Any, old: Any, new: Any, conflict_type: str | None = None) -> dict[str, Any]:
    tenant_value = get_at(tenant, path)
    old_value = get_at(old, path)
    new_value = get_at(new, path)
    return {
        "path": path,
        "conflict_type": conflict_type or classify_conflict(tenant_value, old_value, new_value),
        "tenant_value": _stored(tenant_value),
        "platform_old_value": _stored(old_value),
        "platform_new_value": _stored(new_value),
    }


@dataclass
class MergeOutcome:
    conflicts: list[dict[str, Any]]
    preview: Any
    platform_ops: list[PatchOp]


def three_way_merge(
    old: Any,
    new: Any,
    tenant: Any,
    tenant_ops: list[PatchOp] | None = None,
) -> MergeOutcome:
    """Compare tenant and platform edits made against the same ``old`` body."""
    platform_ops = diff(old, new)
    if tenant_ops is None:
        tenant_ops = diff(old, tenant)

    candidates: set[str] = set()
    for platform_op in platform_ops:
        for tenant_op in tenant_ops:
            if paths_overlap(platform_op.path, tenant_op.path):
                # Report at the shallower path; it covers the whole disputed subtree.
                if len(parse_pointer(platform_op.path)) <= len(parse_pointer(tenant_op.path)):
                    candidates.add(platform_op.path)
                else:
                    candidates.add(tenant_op.path)

    disputed: list[str] = []
    for path in sorted(candidates, key=lambda item: (len(parse_pointer(item)), item)):
        if any(paths_overlap(kept, path) for kept in disputed):
            continue
        disputed.append(path)

    conflicts: list[dict[str, Any]] = []
    for path in disputed:
        # Both sides converging on the same value is not a conflict.
        if _same(get_at(tenant, path), get_at(new, path)):
            continue
        conflicts.append(_conflict_detail(path, tenant, old, new))

    preview = tenant
    for platform_op in platform_ops:
        if any(paths_overlap(platform_op.path, tenant_op.path) for tenant_op in tenant_ops):
            continue
        try:
            preview = apply_patch(preview, [platform_op])
        except ValidationError:
            conflicts.append(_conflict_detail(platform_op.path, tenant, old, new, CONFLICT_VALUE_CHANGED))
    if conflicts:
        preview = MISSING
    return MergeOutcome(conflicts=conflicts, preview=preview, platform_ops=platform_ops)


def conflict_severity(conflicts: list[dict[str, Any]]) -> str:
    if any(item["conflict_type"] in (CONFLICT_TYPE_MISMATCH, CONFLICT_PROPERTY_REMOVED) for item in conflicts):
        return "high"
    return "medium"


@dataclass
class Assessment:
    impact_type: str
    impact_severity: str
    suggested_resolution: str
    description: str
    customization_id: str | None = None
    current_tenant_value: Any = None
    current_platform_value: Any = None
    new_platform_value: Any = None
    platform_diff: list[dict[str, Any]] | None = None
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    preview_merged_value: Any = None
    integrity_error: str | None = None

    def as_values(self) -> dict[str, Any]:
        return {
            "customization_id": self.customization_id,
            "impact_type": self.impact_type,
            "impact_severity": self.impact_severity,
            "suggested_resolution": self.suggested_resolution,
            "description": self.description,
            "current_tenant_value": self.current_tenant_value,
            "current_platform_value": self.current_platform_value,
            "new_platform_value": self.new_platform_value,
            "platform_diff": self.platform_diff,
            "conflicts": self.conflicts,
            "preview_merged_value": self.preview_merged_value,
            "integrity_error": self.integrity_error,
        }


def requires_impact_record(change_type: str, customization: TenantCustomization | None) -> bool:
    # Untouched resources and tenant-only resources only care about newly added platform keys.
    if customization is None or customization.kind == "new":
        return change_type == manifest_service.CHANGE_ADDED
    return True


async def verify_customization_base(session: AsyncSession, customization: TenantCustomization) -> None:
    if customization.base_checksum is None:
        return
    match = await platform_service.find_by_checksum(
        session,
        config_type=customization.config_type,
        resource_key=customization.resource_key,
        digest=customization.base_checksum,
    )
    if match is None:
        raise IntegrityViolationError(
            "Customization base checksum matches no known platform snapshot",
            details={
                "customization_id": customization.id,
                "base_checksum": customization.base_checksum,
            },
        )


async def _body_at(session: AsyncSession, *, config_type: str, resource_key: str, version: str) -> Any:
    snapshot = await platform_service.resolve_snapshot(
        session,
        config_type=config_type,
        resource_key=resource_key,
        as_of_version=version,
    )
    body = platform_service.live_body(snapshot)
    return MISSING if body is None else body


async def assess_change(
    session: AsyncSession,
    *,
    manifest: UpgradeManifest,
    change: dict[str, Any],
    customization: TenantCustomization | None,
) -> Assessment:
    config_type = change["config_type"]
    resource_key = change["resource_key"]
    change_type = change["change_type"]
    entry_level = change.get("impact_level") or "none"
    label = f"{config_type}/{resource_key}"

    old = await _body_at(session, config_type=config_type, resource_key=resource_key, version=manifest.from_version)
    new = await _body_at(session, config_type=config_type, resource_key=resource_key, version=manifest.to_version)
    platform_diff = ops_to_json(diff(old, new))

    if customization is None:
        return Assessment(
            impact_type=IMPACT_NEW_AVAILABLE,
            impact_severity=max_severity(entry_level),
            suggested_resolution=SUGGEST_ACKNOWLEDGE,
            description=f"Platform adds {label} in {manifest.to_version}",
            new_platform_value=_stored(new),
            platform_diff=platform_diff,
        )

    tenant = customization.body
    if customization.kind == "new":
        return Assessment(
            impact_type=IMPACT_CONFLICT,
            impact_severity=max_severity(entry_level, "high"),
            suggested_resolution=SUGGEST_MANUAL_REVIEW,
            description=f"Platform introduces {label}, which the tenant already defines",
            customization_id=customization.id,
            current_tenant_value=tenant,
            new_platform_value=_stored(new),
            platform_diff=platform_diff,
            conflicts=[
                {
                    "path": "",
                    "conflict_type": CONFLICT_PROPERTY_ADDED,
                    "tenant_value": tenant,
                    "platform_old_value": None,
                    "platform_new_value": _stored(new),
                }
            ],
        )

    try:
        await verify_customization_base(session, customization)
    except IntegrityViolationError as exc:
        logger.error(
            "customization_integrity_violation tenant_id=%s customization_id=%s manifest_id=%s base_checksum=%s",
            customization.tenant_id,
            customization.id,
            manifest.id,
            customization.base_checksum,
        )
        return Assessment(
            impact_type=IMPACT_CONFLICT,
            impact_severity="critical",
            suggested_resolution=SUGGEST_MANUAL_REVIEW,
            description=f"Customization of {label} has a base checksum that matches no platform snapshot",
            customization_id=customization.id,
            current_tenant_value=tenant,
            current_platform_value=_stored(old),
            new_platform_value=_stored(new),
            platform_diff=platform_diff,
            integrity_error=exc.message,
        )

    if old is MISSING and customization.base_checksum is not None:
        base = await platform_service.find_by_checksum(
            session,
            config_type=config_type,
            resource_key=resource_key,
            digest=customization.base_checksum,
        )
        if base is not None and base.body is not None:
            old = base.body
            platform_diff = ops_to_json(diff(old, new))

    if change_type == manifest_service.CHANGE_REMOVED or new is MISSING:
        return Assessment(
            impact_type=IMPACT_REMOVED,
            impact_severity=max_severity(entry_level, "critical"),
            suggested_resolution=SUGGEST_MANUAL_REVIEW,
            description=f"Platform removes {label} in {manifest.to_version}; the tenant must choose use_platform",
            customization_id=customization.id,
            current_tenant_value=tenant,
            current_platform_value=_stored(old),
            new_platform_value=None,
            platform_diff=platform_diff,
        )

    tenant_ops = None
    if customization.base_platform_version == manifest.from_version and customization.diff_from_base is not None:
        tenant_ops = ops_from_json(customization.diff_from_base)
    outcome = three_way_merge(old, new, tenant, tenant_ops)

    if change_type == manifest_service.CHANGE_DEPRECATED:
        return Assessment(
            impact_type=IMPACT_DEPRECATED,
            impact_severity=max_severity(entry_level, "high"),
            suggested_resolution=SUGGEST_MANUAL_REVIEW,
            description=f"Platform deprecates {label} in {manifest.to_version}",
            customization_id=customization.id,
            current_tenant_value=tenant,
            current_platform_value=_stored(old),
            new_platform_value=_stored(new),
            platform_diff=platform_diff,
            conflicts=outcome.conflicts,
            preview_merged_value=_stored(outcome.preview),
        )

    if outcome.conflicts:
        return Assessment(
            impact_type=IMPACT_CONFLICT,
            impact_severity=max_severity(entry_level, conflict_severity(outcome.conflicts)),
            suggested_resolution=SUGGEST_MANUAL_REVIEW,
            description=f"{len(outcome.conflicts)} conflicting path(s) in {label}",
            customization_id=customization.id,
            current_tenant_value=tenant,
            current_platform_value=_stored(old),
            new_platform_value=_stored(new),
            platform_diff=platform_diff,
            conflicts=outcome.conflicts,
        )

    affected = IMPACT_EXTENSION_AFFECTED if customization.kind == "extend" else IMPACT_OVERRIDE_AFFECTED
    return Assessment(
        impact_type=affected,
        impact_severity=max_severity(entry_level, "low"),
        suggested_resolution=SUGGEST_AUTO_MERGE,
        description=f"Platform changes to {label} merge cleanly with the customization",
        customization_id=customization.id,
        current_tenant_value=tenant,
        current_platform_value=_stored(old),
        new_platform_value=_stored(new),
        platform_diff=platform_diff,
        preview_merged_value=_stored(outcome.preview),
    )


async def _record_impact_change(
    session: AsyncSession,
    *,
    actor: ActorContext,
    row: TenantUpgradeImpact,
    change_type: str,
    before_state: dict[str, Any] | None,
    reason: str,
) -> None:
    await history_service.record_change(
        session,
        actor=actor,
        entity_type=history_service.ENTITY_UPGRADE_IMPACT,
        entity_id=row.id,
        change_type=change_type,
        before_state=before_state,
        after_state=impact_state(row),
        config_type=row.config_type,
        resource_key=row.resource_key,
        metadata={"manifest_id": row.upgrade_manifest_id, "status": row.status, "analysis": reason},
    )


async def _update_impact(
    session: AsyncSession,
    *,
    actor: ActorContext,
    existing: TenantUpgradeImpact,
    values: dict[str, Any],
    reason: str,
) -> TenantUpgradeImpact:
    before_state = impact_state(existing)
    updated = await impacts_repo.compare_and_set(
        session,
        tenant_id=actor.tenant_id,
        impact_id=existing.id,
        expected_row_version=existing.row_version,
        values=values,
    )
    if not updated:
        raise ConflictError(
            "Impact record changed during analysis",
            current_version=existing.row_version,
            details={"impact_id": existing.id},
        )
    await session.refresh(existing)
    await _record_impact_change(
        session,
        actor=actor,
        row=existing,
        change_type=history_service.CHANGE_UPDATE,
        before_state=before_state,
        reason=reason,
    )
    return existing


async def analyze(
    session: AsyncSession,
    *,
    actor: ActorContext,
    manifest_id: str,
    force: bool = False,
    commit: bool = True,
) -> list[TenantUpgradeImpact]:
    """Create or refresh one impact record per affected resource of a manifest.

    Open records whose resource no longer needs attention (the customization
    was dropped, or turned into a tenant-only resource) are closed as
    ``acknowledged`` so they cannot block the upgrade.
    """
    reopened = 0
    skipped = 0
    closed = 0
    upgrade_actor = actor.with_source(CHANGE_SOURCE_UPGRADE)
    async with unit_of_work(session, commit=commit):
        manifest = await manifest_service.get_manifest(session, manifest_id)
        manifest_service.verify_manifest(manifest)
        records: list[TenantUpgradeImpact] = []
        for change in manifest.config_changes or []:
            customization = await customizations_repo.get_active(
                session,
                tenant_id=actor.tenant_id,
                config_type=change["config_type"],
                resource_key=change["resource_key"],
            )
            existing = await impacts_repo.get_for_resource(
                session,
                tenant_id=actor.tenant_id,
                manifest_id=manifest.id,
                config_type=change["config_type"],
                resource_key=change["resource_key"],
            )
            if not requires_impact_record(change["change_type"], customization):
                if existing is not None and existing.status not in TERMINAL_STATUSES:
                    await _update_impact(
                        session,
                        actor=upgrade_actor,
                        existing=existing,
                        values={
                            "status": STATUS_ACKNOWLEDGED,
                            "resolution_notes": "Customization no longer present; the tenant follows the platform",
                            "resolved_by": actor.actor_id,
                            "resolved_at": datetime.now(timezone.utc),
                        },
                        reason="closed",
                    )
                    closed += 1
                    records.append(existing)
                continue
            if existing is not None and existing.status in TERMINAL_STATUSES:
                if not force:
                    skipped += 1
                    records.append(existing)
                    continue
                reopened += 1

            assessment = await assess_change(session, manifest=manifest, change=change, customization=customization)
            values = {
                **assessment.as_values(),
                "status": STATUS_ANALYZED,
                "analyzed_at": datetime.now(timezone.utc),
                "resolution_choice": None,
                "custom_resolution_value": None,
                "resolution_notes": None,
                "resolved_by": None,
                "resolved_at": None,
                "auto_resolved": False,
            }
            if existing is None:
                row = TenantUpgradeImpact(
                    id=uuid4().hex,
                    tenant_id=actor.tenant_id,
                    upgrade_manifest_id=manifest.id,
                    config_type=change["config_type"],
                    resource_key=change["resource_key"],
                    impact_type=assessment.impact_type,
                    suggested_resolution=assessment.suggested_resolution,
                    status=STATUS_PENDING,
                    conflicts=[],
                    row_version=1,
                )
                session.add(row)
                await session.flush()
                for key, value in values.items():
                    setattr(row, key, value)
                row.row_version = 2
                await session.flush()
                await _record_impact_change(
                    session,
                    actor=upgrade_actor,
                    row=row,
                    change_type=history_service.CHANGE_CREATE,
                    before_state=None,
                    reason="created",
                )
            else:
                was_terminal = existing.status in TERMINAL_STATUSES
                row = await _update_impact(
                    session,
                    actor=upgrade_actor,
                    existing=existing,
                    values=values,
                    reason="reopened" if was_terminal else "refreshed",
                )
            records.append(row)

    logger.info(
        "impact_analyzed tenant_id=%s manifest_id=%s records=%s skipped=%s reopened=%s closed=%s",
        actor.tenant_id,
        manifest_id,
        len(records),
        skipped,
        reopened,
        closed,
    )

    if commit and get_settings().auto_resolve_on_analyze:
        from upgradeguard.services import resolution as resolution_service

        await resolution_service.auto_resolve_all(session, actor=actor, manifest_id=manifest_id)
        records = await impacts_repo.list_impacts(session, tenant_id=actor.tenant_id, manifest_id=manifest_id)
    return records


async def get_impact(session: AsyncSession, *, tenant_id: str, impact_id: str) -> TenantUpgradeImpact:
    row = await impacts_repo.get_by_id(session, tenant_id=tenant_id, impact_id=impact_id)
    if row is None:
        raise NotFoundError("Impact record not found", details={"impact_id": impact_id})
    return row


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
    return await impacts_repo.list_impacts(
        session,
        tenant_id=tenant_id,
        manifest_id=manifest_id,
        status=status,
        impact_type=impact_type,
        severity=severity,
        offset=offset,
        limit=limit,
    )
