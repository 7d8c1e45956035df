"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-12 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create users for tenant-bound principals and RBAC roles.
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"], unique=False)

    # Store hashed API keys with a denormalized tenant id for fast lookups.
    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"], unique=False)
    op.create_index("ix_api_keys_tenant_id", "api_keys", ["tenant_id"], unique=False)
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    # Immutable platform defaults, one row per resource per release.
    op.create_table(
        "platform_config_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("config_type", sa.String(), nullable=False),
        sa.Column("resource_key", sa.String(), nullable=False),
        sa.Column("platform_version", sa.String(), nullable=False),
        sa.Column("schema_version", sa.String(), nullable=False, server_default="1"),
        sa.Column("body", postgresql.JSONB(), nullable=True),
        sa.Column("checksum", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("is_extensible", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("published_by", sa.String(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "config_type",
            "resource_key",
            "platform_version",
            name="uq_platform_config_snapshots_version",
        ),
    )
    op.create_index(
        "ix_platform_config_snapshots_resource",
        "platform_config_snapshots",
        ["config_type", "resource_key"],
    )
    op.create_index("ix_platform_config_snapshots_checksum", "platform_config_snapshots", ["checksum"])
    op.create_index(
        "ix_platform_config_snapshots_platform_version",
        "platform_config_snapshots",
        ["platform_version"],
    )

    op.create_table(
        "tenant_customizations",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("config_type", sa.String(), nullable=False),
        sa.Column("resource_key", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("base_platform_version", sa.String(), nullable=True),
        sa.Column("base_checksum", sa.String(), nullable=True),
        sa.Column("body", postgresql.JSONB(), nullable=True),
        sa.Column("diff_from_base", postgresql.JSONB(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "previous_version_id",
            sa.String(),
            sa.ForeignKey("tenant_customizations.id"),
            nullable=True,
        ),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id",
            "config_type",
            "resource_key",
            "version",
            name="uq_tenant_customizations_scope_version",
        ),
    )
    op.create_index("ix_tenant_customizations_tenant_id", "tenant_customizations", ["tenant_id"])
    op.create_index(
        "ix_tenant_customizations_tenant_active",
        "tenant_customizations",
        ["tenant_id", "is_active"],
    )
    # Partial unique index keeps a single active row per scope.
    op.create_index(
        "uq_tenant_customizations_active",
        "tenant_customizations",
        ["tenant_id", "config_type", "resource_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "upgrade_manifests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("from_version", sa.String(), nullable=False),
        sa.Column("to_version", sa.String(), nullable=False),
        sa.Column("config_changes", postgresql.JSONB(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("upgrade_type", sa.String(), nullable=False, server_default="minor"),
        sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_notes", sa.Text(), nullable=True),
        sa.Column("deprecations", postgresql.JSONB(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("from_version", "to_version", name="uq_upgrade_manifests_versions"),
    )
    op.create_index("ix_upgrade_manifests_from_version", "upgrade_manifests", ["from_version"])
    op.create_index("ix_upgrade_manifests_to_version", "upgrade_manifests", ["to_version"])

    op.create_table(
        "tenant_upgrade_impacts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "upgrade_manifest_id",
            sa.String(),
            sa.ForeignKey("upgrade_manifests.id"),
            nullable=False,
        ),
        sa.Column(
            "customization_id",
            sa.String(),
            sa.ForeignKey("tenant_customizations.id"),
            nullable=True,
        ),
        sa.Column("config_type", sa.String(), nullable=False),
        sa.Column("resource_key", sa.String(), nullable=False),
        sa.Column("impact_type", sa.String(), nullable=False),
        sa.Column("impact_severity", sa.String(), nullable=False, server_default="none"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("current_tenant_value", postgresql.JSONB(), nullable=True),
        sa.Column("current_platform_value", postgresql.JSONB(), nullable=True),
        sa.Column("new_platform_value", postgresql.JSONB(), nullable=True),
        sa.Column("platform_diff", postgresql.JSONB(), nullable=True),
        sa.Column("conflicts", postgresql.JSONB(), nullable=False),
        sa.Column("suggested_resolution", sa.String(), nullable=False),
        sa.Column("preview_merged_value", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending_analysis"),
        sa.Column("resolution_choice", sa.String(), nullable=True),
        sa.Column("custom_resolution_value", postgresql.JSONB(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("integrity_error", sa.Text(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("analyzed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Reruns update the same record instead of duplicating it.
        sa.UniqueConstraint(
            "tenant_id",
            "upgrade_manifest_id",
            "config_type",
            "resource_key",
            name="uq_tenant_upgrade_impacts_resource",
        ),
    )
    op.create_index("ix_tenant_upgrade_impacts_tenant_id", "tenant_upgrade_impacts", ["tenant_id"])
    op.create_index(
        "ix_tenant_upgrade_impacts_tenant_manifest",
        "tenant_upgrade_impacts",
        ["tenant_id", "upgrade_manifest_id"],
    )
    op.create_index("ix_tenant_upgrade_impacts_status", "tenant_upgrade_impacts", ["tenant_id", "status"])

    # Append-only change log; rollbacks reference the entry they reverse.
    op.create_table(
        "config_change_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("config_type", sa.String(), nullable=True),
        sa.Column("resource_key", sa.String(), nullable=True),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("before_state", postgresql.JSONB(), nullable=True),
        sa.Column("after_state", postgresql.JSONB(), nullable=True),
        sa.Column("diff", postgresql.JSONB(), nullable=True),
        sa.Column("change_reason", sa.Text(), nullable=True),
        sa.Column("change_source", sa.String(), nullable=False, server_default="api"),
        sa.Column("performed_by", sa.String(), nullable=True),
        sa.Column(
            "rollback_of",
            sa.String(),
            sa.ForeignKey("config_change_history.id"),
            nullable=True,
        ),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_config_change_history_entity",
        "config_change_history",
        ["entity_type", "entity_id"],
    )
    op.create_index(
        "ix_config_change_history_tenant_created",
        "config_change_history",
        ["tenant_id", "created_at"],
    )
    op.create_index(
        "ix_config_change_history_resource",
        "config_change_history",
        ["tenant_id", "config_type", "resource_key"],
    )
    op.create_index("ix_config_change_history_rollback_of", "config_change_history", ["rollback_of"])

    op.create_table(
        "tenant_platform_versions",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("platform_version", sa.String(), nullable=False),
        sa.Column("previous_platform_version", sa.String(), nullable=True),
        sa.Column("last_manifest_id", sa.String(), nullable=True),
        sa.Column("upgraded_by", sa.String(), nullable=True),
        sa.Column("upgraded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("tenant_platform_versions")

    op.drop_index("ix_config_change_history_rollback_of", table_name="config_change_history")
    op.drop_index("ix_config_change_history_resource", table_name="config_change_history")
    op.drop_index("ix_config_change_history_tenant_created", table_name="config_change_history")
    op.drop_index("ix_config_change_history_entity", table_name="config_change_history")
    op.drop_table("config_change_history")

    op.drop_index("ix_tenant_upgrade_impacts_status", table_name="tenant_upgrade_impacts")
    op.drop_index("ix_tenant_upgrade_impacts_tenant_manifest", table_name="tenant_upgrade_impacts")
    op.drop_index("ix_tenant_upgrade_impacts_tenant_id", table_name="tenant_upgrade_impacts")
    op.drop_table("tenant_upgrade_impacts")

    op.drop_index("ix_upgrade_manifests_to_version", table_name="upgrade_manifests")
    op.drop_index("ix_upgrade_manifests_from_version", table_name="upgrade_manifests")
    op.drop_table("upgrade_manifests")

    op.drop_index("uq_tenant_customizations_active", table_name="tenant_customizations")
    op.drop_index("ix_tenant_customizations_tenant_active", table_name="tenant_customizations")
    op.drop_index("ix_tenant_customizations_tenant_id", table_name="tenant_customizations")
    op.drop_table("tenant_customizations")

    op.drop_index("ix_platform_config_snapshots_platform_version", table_name="platform_config_snapshots")
    op.drop_index("ix_platform_config_snapshots_checksum", table_name="platform_config_snapshots")
    op.drop_index("ix_platform_config_snapshots_resource", table_name="platform_config_snapshots")
    op.drop_table("platform_config_snapshots")

    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_index("ix_api_keys_tenant_id", table_name="api_keys")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")

    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_table("users")
