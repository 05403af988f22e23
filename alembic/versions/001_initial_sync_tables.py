"""Initial sync tables: secret_mappings, secret_exclusion_patterns, api_quotas,
environment_configs, secret_sync_events. Seeds global exclusion patterns.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

import uuid
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

GLOBAL_EXCLUSIONS = [
    ("^GITHUB_TOKEN$", "Platform-managed GitHub token"),
    ("^ACTIONS_.*", "GitHub Actions runtime variables"),
    ("^RUNNER_.*", "GitHub runner environment variables"),
    ("^CI$", "CI flag auto-injected by GitHub"),
    ("^GITHUB_WORKSPACE$", "Workspace path auto-injected"),
    ("^GITHUB_SHA$", "Commit SHA auto-injected"),
    ("^GITHUB_REF$", "Git ref auto-injected"),
]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "secret_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", sa.String(63), nullable=False),
        sa.Column("secret_name", sa.String(100), nullable=False),
        sa.Column("value_hash", sa.String(64), nullable=True),
        sa.Column(
            "source_scope", sa.String(20), nullable=False, server_default=sa.text("'actions'")
        ),
        sa.Column(
            "target_scopes",
            postgresql.ARRAY(sa.String(32)),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column(
            "scope_hashes",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "is_excluded", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column(
            "sync_status", sa.String(20), nullable=False, server_default=sa.text("'pending'")
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "project_id", "secret_name", name="uq_secret_mappings_project_secret"
        ),
        sa.CheckConstraint("secret_name ~ '^[A-Z][A-Z0-9_]*$'", name="ck_secret_mappings_name"),
    )
    op.create_index("ix_secret_mappings_sync_status", "secret_mappings", ["sync_status"])

    exclusions = op.create_table(
        "secret_exclusion_patterns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", sa.String(63), nullable=True),
        sa.Column("pattern", sa.String(200), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("is_global", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(is_global AND project_id IS NULL) OR (NOT is_global AND project_id IS NOT NULL)",
            name="ck_secret_exclusion_patterns_scope",
        ),
        sa.UniqueConstraint("project_id", "pattern", name="uq_secret_exclusion_patterns_project"),
    )
    op.create_index(
        "ix_secret_exclusion_patterns_global", "secret_exclusion_patterns", ["is_global"]
    )

    op.create_table(
        "api_quotas",
        sa.Column("account", sa.String(255), primary_key=True),
        sa.Column("category", sa.String(20), primary_key=True),
        sa.Column("remaining", sa.Integer(), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=False),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "last_checked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        *_timestamps(),
        sa.CheckConstraint("remaining >= 0", name="ck_api_quotas_remaining"),
    )
    op.create_index("ix_api_quotas_reset_at", "api_quotas", ["reset_at"])

    op.create_table(
        "environment_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", sa.String(63), nullable=False),
        sa.Column("environment_name", sa.String(20), nullable=False),
        sa.Column("remote_environment_id", sa.Integer(), nullable=False),
        sa.Column(
            "protection_rules",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "secrets",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "linked_resources",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        *_timestamps(),
        sa.UniqueConstraint(
            "project_id", "environment_name", name="uq_environment_configs_project_env"
        ),
        sa.CheckConstraint(
            "environment_name IN ('dev', 'staging', 'production')",
            name="ck_environment_configs_name",
        ),
    )

    op.create_table(
        "secret_sync_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", sa.String(63), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("secret_name", sa.String(100), nullable=True),
        sa.Column(
            "affected_scopes",
            postgresql.ARRAY(sa.String(64)),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_secret_sync_events_project_created", "secret_sync_events", ["project_id", "created_at"]
    )
    op.create_index("ix_secret_sync_events_correlation", "secret_sync_events", ["correlation_id"])

    op.bulk_insert(
        exclusions,
        [
            {"id": uuid.uuid4(), "pattern": pattern, "reason": reason, "is_global": True}
            for pattern, reason in GLOBAL_EXCLUSIONS
        ],
    )


def downgrade() -> None:
    op.drop_table("secret_sync_events")
    op.drop_table("environment_configs")
    op.drop_table("api_quotas")
    op.drop_table("secret_exclusion_patterns")
    op.drop_table("secret_mappings")
