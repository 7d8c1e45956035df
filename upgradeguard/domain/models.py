from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON on other dialects (SQLite for local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist RBAC role as a simple string for fast lookup and migration safety.
    role: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class PlatformConfigSnapshot(Base):
    __tablename__ = "platform_config_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "config_type",
            "resource_key",
            "platform_version",
            name="uq_platform_config_snapshots_version",
        ),
        Index("ix_platform_config_snapshots_resource", "config_type", "resource_key"),
        Index("ix_platform_config_snapshots_checksum", "checksum"),
    )

    # Immutable platform defaults; a new release appends rows, never edits them.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    config_type: Mapped[str] = mapped_column(String)
    resource_key: Mapped[str] = mapped_column(String)
    platform_version: Mapped[str] = mapped_column(String, index=True)
    schema_version: Mapped[str] = mapped_column(String, default="1")
    body: Mapped[Any] = mapped_column(JSONType, nullable=True)
    checksum: Mapped[str] = mapped_column(String)
    # active | deprecated | removed (tombstone with a null body).
    status: Mapped[str] = mapped_column(String, default="active")
    is_extensible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_by: Mapped[str | None] = mapped_column(String, nullable=True)
    published_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class TenantCustomization(Base):
    __tablename__ = "tenant_customizations"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "config_type",
            "resource_key",
            "version",
            name="uq_tenant_customizations_scope_version",
        ),
        # At most one active row per scope; concurrent writers lose on this index.
        Index(
            "uq_tenant_customizations_active",
            "tenant_id",
            "config_type",
            "resource_key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index("ix_tenant_customizations_tenant_active", "tenant_id", "is_active"),
    )

    # Each edit inserts a new row; previous_version_id links the chain backward.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    config_type: Mapped[str] = mapped_column(String)
    resource_key: Mapped[str] = mapped_column(String)
    # override | extend | new
    kind: Mapped[str] = mapped_column(String)
    base_platform_version: Mapped[str | None] = mapped_column(String, nullable=True)
    base_checksum: Mapped[str | None] = mapped_column(String, nullable=True)
    body: Mapped[Any] = mapped_column(JSONType, nullable=True)
    diff_from_base: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    previous_version_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenant_customizations.id"), nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class UpgradeManifest(Base):
    __tablename__ = "upgrade_manifests"
    __table_args__ = (
        UniqueConstraint("from_version", "to_version", name="uq_upgrade_manifests_versions"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    from_version: Mapped[str] = mapped_column(String, index=True)
    to_version: Mapped[str] = mapped_column(String, index=True)
    config_changes: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    # Canonical checksum of config_changes for tamper detection.
    checksum: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # major | minor | patch
    upgrade_type: Mapped[str] = mapped_column(String, default="minor")
    is_mandatory: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    release_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    deprecations: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class TenantUpgradeImpact(Base):
    __tablename__ = "tenant_upgrade_impacts"
    __table_args__ = (
        # One record per tenant/manifest/resource so reruns update instead of duplicating.
        UniqueConstraint(
            "tenant_id",
            "upgrade_manifest_id",
            "config_type",
            "resource_key",
            name="uq_tenant_upgrade_impacts_resource",
        ),
        Index("ix_tenant_upgrade_impacts_tenant_manifest", "tenant_id", "upgrade_manifest_id"),
        Index("ix_tenant_upgrade_impacts_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    upgrade_manifest_id: Mapped[str] = mapped_column(String, ForeignKey("upgrade_manifests.id"))
    customization_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenant_customizations.id"), nullable=True
    )
    config_type: Mapped[str] = mapped_column(String)
    resource_key: Mapped[str] = mapped_column(String)
    impact_type: Mapped[str] = mapped_column(String)
    impact_severity: Mapped[str] = mapped_column(String, default="none")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_tenant_value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    current_platform_value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    new_platform_value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    platform_diff: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    conflicts: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    suggested_resolution: Mapped[str] = mapped_column(String)
    preview_merged_value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending_analysis")
    resolution_choice: Mapped[str | None] = mapped_column(String, nullable=True)
    custom_resolution_value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Populated when the stored base checksum matched no known snapshot.
    integrity_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Optimistic concurrency counter bumped on every write.
    row_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class ConfigChangeHistory(Base):
    __tablename__ = "config_change_history"
    __table_args__ = (
        Index("ix_config_change_history_entity", "entity_type", "entity_id"),
        Index("ix_config_change_history_tenant_created", "tenant_id", "created_at"),
        Index("ix_config_change_history_resource", "tenant_id", "config_type", "resource_key"),
        Index("ix_config_change_history_rollback_of", "rollback_of"),
    )

    # Append-only audit log; rollbacks add rows instead of editing old ones.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    # customization | upgrade_impact | platform_version
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    config_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # create | update | delete | rollback
    change_type: Mapped[str] = mapped_column(String)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    diff: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # api | upgrade | rollback | system
    change_source: Mapped[str] = mapped_column(String, default="api")
    performed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rollback_of: Mapped[str | None] = mapped_column(
        String, ForeignKey("config_change_history.id"), nullable=True
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class TenantPlatformVersion(Base):
    __tablename__ = "tenant_platform_versions"

    # Single marker row per tenant, advanced only by an applied upgrade.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    platform_version: Mapped[str] = mapped_column(String)
    previous_platform_version: Mapped[str | None] = mapped_column(String, nullable=True)
    last_manifest_id: Mapped[str | None] = mapped_column(String, nullable=True)
    upgraded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    upgraded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )
