from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from upgradeguard.core.config import SEVERITY_ORDER, get_settings
from upgradeguard.core.errors import NotFoundError, ValidationError
from upgradeguard.domain.models import (
    TenantCustomization,
    TenantPlatformVersion,
    TenantUpgradeImpact,
    UpgradeManifest,
)
from upgradeguard.persistence.db import unit_of_work
from upgradeguard.persistence.repos import customizations as customizations_repo
from upgradeguard.persistence.repos import impacts as impacts_repo
from upgradeguard.persistence.repos import manifests as manifests_repo
from upgradeguard.persistence.repos import platform_versions as platform_versions_repo


# Statuses after which a record no longer needs a decision.
TERMINAL_STATUSES = frozenset({"resolved", "auto_resolved", "acknowledged"})
OPEN_STATUSES = ("pending_analysis", "analyzed")

PHASE_PRE = "pre"
PHASE_DURING = "during"
PHASE_POST = "post"
GUIDANCE_PHASES = (PHASE_PRE, PHASE_DURING, PHASE_POST)

HIGHLIGHT_SEVERITIES = frozenset({"high", "critical"})
HIGHLIGHT_LIMIT = 10
CUSTOMIZATION_SUMMARY_LIMIT = 100


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def marker_state(row: TenantPlatformVersion) -> dict[str, Any]:
    return {
        "tenant_id": row.tenant_id,
        "platform_version": row.platform_version,
        "previous_platform_version": row.previous_platform_version,
        "last_manifest_id": row.last_manifest_id,
        "upgraded_by": row.upgraded_by,
        "upgraded_at": _iso(row.upgraded_at),
        "row_version": row.row_version,
    }


async def current_version_value(session: AsyncSession, tenant_id: str) -> str:
    # Read-only lookup; tenants without a marker are on the configured default release.
    marker = await platform_versions_repo.get_marker(session, tenant_id)
    if marker is None:
        return get_settings().default_platform_version
    return marker.platform_version


async def get_current_version(
    session: AsyncSession,
    tenant_id: str,
    *,
    commit: bool = True,
) -> TenantPlatformVersion:
    async with unit_of_work(session, commit=commit):
        marker = await platform_versions_repo.ensure_marker(
            session,
            tenant_id=tenant_id,
            default_version=get_settings().default_platform_version,
        )
    return marker


def summarize_impacts(
    impacts: Iterable[TenantUpgradeImpact],
    *,
    blocking_severities: set[str] | None = None,
) -> dict[str, Any]:
    blocking_levels = blocking_severities if blocking_severities is not None else get_settings().blocking_severities()
    by_severity = {level: 0 for level in SEVERITY_ORDER}
    by_type: dict[str, int] = {}
    by_status: dict[str, int] = {}
    blocking: list[str] = []
    auto_resolvable = 0
    total = 0
    for impact in impacts:
        total += 1
        by_severity[impact.impact_severity] = by_severity.get(impact.impact_severity, 0) + 1
        by_type[impact.impact_type] = by_type.get(impact.impact_type, 0) + 1
        by_status[impact.status] = by_status.get(impact.status, 0) + 1
        if impact.impact_severity in blocking_levels and impact.status not in TERMINAL_STATUSES:
            blocking.append(impact.id)
        if (
            impact.status == "analyzed"
            and impact.suggested_resolution == "auto_merge"
            and not impact.conflicts
        ):
            auto_resolvable += 1
    return {
        "total": total,
        "by_severity": by_severity,
        "by_type": by_type,
        "by_status": by_status,
        "blocking": blocking,
        "auto_resolvable": auto_resolvable,
        "can_apply": not blocking,
    }


def _title(resource_key: str) -> str:
    return resource_key.replace("_", " ").replace("-", " ").title()


def impact_highlights(
    impacts: Iterable[TenantUpgradeImpact],
    *,
    manifest: UpgradeManifest | None = None,
    limit: int = HIGHLIGHT_LIMIT,
) -> dict[str, Any]:
    """Pick out the records a person should read first.

    ``conflicts`` holds undecided high and critical records, most severe
    first, with both sides of the disagreement. ``new_features`` lists
    resources the release adds that the tenant has not customized, and
    ``deprecations`` echoes the manifest's notices.
    """
    rows = list(impacts)
    urgent = [
        row
        for row in rows
        if row.impact_severity in HIGHLIGHT_SEVERITIES and row.status not in TERMINAL_STATUSES
    ]
    urgent.sort(key=lambda row: (-SEVERITY_ORDER.get(row.impact_severity, 0), row.config_type, row.resource_key))
    conflicts = [
        {
            "impact_id": row.id,
            "config_type": row.config_type,
            "resource_key": row.resource_key,
            "impact_type": row.impact_type,
            "severity": row.impact_severity,
            "description": row.description,
            "tenant_value": row.current_tenant_value,
            "new_platform_value": row.new_platform_value,
            "suggested_resolution": row.suggested_resolution,
        }
        for row in urgent[:limit]
    ]
    new_features = [
        {
            "code": row.resource_key,
            "name": _title(row.resource_key),
            "config_type": row.config_type,
            "description": row.description or "Available in this release",
        }
        for row in rows
        if row.impact_type == "new_available"
    ][:limit]
    deprecations = [
        {
            "code": item.get("code"),
            "resource": item.get("resource"),
            "message": item.get("message"),
            "removal_version": item.get("removal_version"),
            "replacement": item.get("replacement"),
        }
        for item in (manifest.deprecations or [] if manifest is not None else [])
    ]
    return {"conflicts": conflicts, "new_features": new_features, "deprecations": deprecations}


def summarize_customizations(rows: Iterable[TenantCustomization]) -> dict[str, Any]:
    items: list[dict[str, Any]] = []
    by_kind: dict[str, int] = {}
    by_config_type: dict[str, int] = {}
    for row in rows:
        by_kind[row.kind] = by_kind.get(row.kind, 0) + 1
        by_config_type[row.config_type] = by_config_type.get(row.config_type, 0) + 1
        items.append(
            {
                "id": row.id,
                "config_type": row.config_type,
                "resource_key": row.resource_key,
                "kind": row.kind,
                "version": row.version,
                "description": row.description,
                "base_platform_version": row.base_platform_version,
                "modified_by": row.updated_by or row.created_by,
                "last_modified": _iso(row.updated_at),
            }
        )
    items.sort(key=lambda item: item["last_modified"] or "", reverse=True)
    return {
        "total": len(items),
        "by_kind": by_kind,
        "by_config_type": by_config_type,
        "items": items,
    }


def _action(action_id: str, title: str, description: str, priority: str) -> dict[str, str]:
    return {"id": action_id, "title": title, "description": description, "priority": priority}


def _pre_upgrade(
    current_version: str,
    target_version: str | None,
    customizations: dict[str, Any],
    summary: dict[str, Any],
    highlights: dict[str, Any],
) -> dict[str, Any]:
    total = summary["total"]
    critical = summary["by_severity"].get("critical", 0)
    high = summary["by_severity"].get("high", 0)
    if total == 0:
        text = (
            f"{customizations['total']} customization(s) on record; "
            "no impacts were found and the upgrade should apply cleanly."
        )
    elif critical:
        text = (
            f"This upgrade raises {total} impact(s), including {critical} critical "
            "impact(s) that must be decided before applying."
        )
    elif high:
        text = f"This upgrade raises {total} impact(s); {high} need a decision, the rest can merge automatically."
    else:
        text = f"This upgrade raises {total} impact(s), all of them minor."

    target = f" to {target_version}" if target_version else ""
    key_points = [
        f"Upgrading from {current_version}{target}",
        f"{customizations['total']} active customization(s) were checked",
    ]
    if highlights["conflicts"]:
        key_points.append(f"{len(highlights['conflicts'])} impact(s) need manual resolution")
    if summary["auto_resolvable"]:
        key_points.append(f"{summary['auto_resolvable']} impact(s) can be auto-merged")
    if highlights["new_features"]:
        key_points.append(f"{len(highlights['new_features'])} new resource(s) become available")
    if highlights["deprecations"]:
        key_points.append(f"{len(highlights['deprecations'])} resource(s) are deprecated")

    actions: list[dict[str, str]] = []
    if summary["blocking"]:
        actions.append(
            _action(
                "resolve-blocking",
                "Resolve blocking impacts",
                f"Resolve {len(summary['blocking'])} blocking impact(s) before applying",
                "required",
            )
        )
    if summary["auto_resolvable"]:
        actions.append(
            _action(
                "auto-resolve",
                "Run auto-resolve",
                f"Auto-merge {summary['auto_resolvable']} conflict-free impact(s)",
                "recommended",
            )
        )
    actions.append(
        _action(
            "review-release-notes",
            "Review release notes",
            "Read the release notes for new and changed resources",
            "recommended",
        )
    )
    if highlights["deprecations"]:
        actions.append(
            _action(
                "plan-migrations",
                "Plan deprecation migrations",
                f"Plan migration off {len(highlights['deprecations'])} deprecated resource(s)",
                "optional",
            )
        )

    warnings: list[str] = []
    if critical:
        warnings.append(f"{critical} critical impact(s) must be resolved before upgrading")
    removed = summary["by_type"].get("removed", 0)
    if removed:
        warnings.append(f"{removed} customized resource(s) are removed by the platform")
    if any(item["removal_version"] for item in highlights["deprecations"]):
        warnings.append("Some deprecated resources are scheduled for removal")
    return {"summary": text, "key_points": key_points, "action_items": actions, "warnings": warnings}


def _during_upgrade() -> dict[str, Any]:
    return {
        "summary": "The upgrade is being applied; avoid editing customizations until it completes.",
        "key_points": [
            "Resolved values are written as new customization versions",
            "The platform version marker moves only after every write succeeds",
        ],
        "action_items": [],
        "warnings": ["Customization writes made now may conflict with the upgrade and be rejected"],
    }


def _post_upgrade(current_version: str, summary: dict[str, Any], highlights: dict[str, Any]) -> dict[str, Any]:
    if highlights["new_features"]:
        text = (
            f"Now on {current_version}; {len(highlights['new_features'])} new resource(s) are available "
            "and customizations were carried forward."
        )
    else:
        text = f"Now on {current_version}; customizations were carried forward."
    key_points = ["Previous customization versions remain in history for rollback"]
    resolved = summary["by_status"].get("resolved", 0) + summary["by_status"].get("auto_resolved", 0)
    if resolved:
        key_points.append(f"{resolved} impact(s) were resolved into new customization versions")
    if highlights["new_features"]:
        key_points.append(f"{len(highlights['new_features'])} new resource(s) are available to explore")
    actions = [
        _action(
            "verify-customizations",
            "Verify customizations",
            "Check that effective values match expectations",
            "recommended",
        )
    ]
    if highlights["new_features"]:
        actions.append(
            _action(
                "explore-features",
                "Explore new resources",
                f"Review {len(highlights['new_features'])} resource(s) added in this release",
                "optional",
            )
        )
    warnings: list[str] = []
    if highlights["deprecations"]:
        warnings.append(f"{len(highlights['deprecations'])} deprecated resource(s) still need a migration plan")
    return {"summary": text, "key_points": key_points, "action_items": actions, "warnings": warnings}


def generate_guidance(
    phase: str,
    *,
    current_version: str,
    target_version: str | None,
    customizations: dict[str, Any],
    summary: dict[str, Any],
    highlights: dict[str, Any],
) -> dict[str, Any]:
    """Build rule-based guidance for one upgrade phase (pre, during or post)."""
    if phase == PHASE_PRE:
        body = _pre_upgrade(current_version, target_version, customizations, summary, highlights)
    elif phase == PHASE_DURING:
        body = _during_upgrade()
    elif phase == PHASE_POST:
        body = _post_upgrade(current_version, summary, highlights)
    else:
        raise ValidationError(f"Unknown guidance phase '{phase}'", details={"phase": phase})
    return {"phase": phase, **body}


async def get_upgrade_context(
    session: AsyncSession,
    tenant_id: str,
    *,
    manifest_id: str | None = None,
    phase: str | None = None,
) -> dict[str, Any]:
    """Collect version, customization and impact state for one tenant.

    Without ``manifest_id`` the first release available from the current
    version is described, or the last applied one when none is pending.
    ``phase`` defaults to ``post`` for an applied manifest and ``pre``
    otherwise.
    """
    if phase is not None and phase not in GUIDANCE_PHASES:
        raise ValidationError(f"Unknown guidance phase '{phase}'", details={"phase": phase})
    marker = await platform_versions_repo.get_marker(session, tenant_id)
    current_version = marker.platform_version if marker else get_settings().default_platform_version
    last_manifest_id = marker.last_manifest_id if marker else None
    customization_rows = await customizations_repo.list_customizations(
        session,
        tenant_id=tenant_id,
        is_active=True,
        limit=CUSTOMIZATION_SUMMARY_LIMIT,
    )
    customization_count = await customizations_repo.count_active(session, tenant_id=tenant_id)
    pending = await impacts_repo.count_by_status(session, tenant_id=tenant_id, statuses=OPEN_STATUSES)
    available = await manifests_repo.list_manifests(session, from_version=current_version, limit=50)

    manifest: UpgradeManifest | None = None
    if manifest_id is not None:
        manifest = await manifests_repo.get_by_id(session, manifest_id)
        if manifest is None:
            raise NotFoundError("Upgrade manifest not found", details={"manifest_id": manifest_id})
    elif available:
        manifest = available[0]
    elif last_manifest_id is not None:
        manifest = await manifests_repo.get_by_id(session, last_manifest_id)

    impacts: list[TenantUpgradeImpact] = []
    if manifest is not None:
        impacts = await impacts_repo.list_impacts(session, tenant_id=tenant_id, manifest_id=manifest.id)
    summary = summarize_impacts(impacts)
    highlights = impact_highlights(impacts, manifest=manifest)
    customizations = summarize_customizations(customization_rows)
    customizations["total"] = customization_count
    if phase is None:
        applied = manifest is not None and manifest.id == last_manifest_id
        phase = PHASE_POST if applied else PHASE_PRE

    return {
        "tenant_id": tenant_id,
        "current_version": current_version,
        "previous_version": marker.previous_platform_version if marker else None,
        "last_manifest_id": last_manifest_id,
        "last_upgrade_at": _iso(marker.upgraded_at) if marker else None,
        "customization_count": customization_count,
        "pending_impacts": pending,
        "available_manifests": [
            {
                "id": row.id,
                "from_version": row.from_version,
                "to_version": row.to_version,
                "upgrade_type": row.upgrade_type,
                "is_mandatory": row.is_mandatory,
            }
            for row in available
        ],
        "manifest_id": manifest.id if manifest is not None else None,
        "impact_summary": {**summary, **highlights},
        "customizations": customizations,
        "guidance": generate_guidance(
            phase,
            current_version=current_version,
            target_version=manifest.to_version if manifest is not None else None,
            customizations=customizations,
            summary=summary,
            highlights=highlights,
        ),
    }
