"""
SQLAlchemy database models for secretsync.

All models use:
- UUIDv7 primary keys (time-sortable), except quota records (natural key)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Natural-key unique constraints so every write can be an upsert

No model ever stores a secret value. Only SHA-256 fingerprints are kept.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    import time

    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


class SecretMapping(Base):
    """One row per (project, secret name).

    value_hash is the fingerprint of the last value confirmed written to at
    least one target. scope_hashes holds the same per target, so a target
    whose write failed keeps its older hash and is retried on the next sync.
    """

    __tablename__ = "secret_mappings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    project_id: Mapped[str] = mapped_column(String(63), nullable=False)
    secret_name: Mapped[str] = mapped_column(String(100), nullable=False)
    value_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_scope: Mapped[str] = mapped_column(String(20), nullable=False, default="actions")
    target_scopes: Mapped[list[str]] = mapped_column(ARRAY(String(32)), nullable=False, default=list)
    scope_hashes: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    is_excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, synced, failed, conflict
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("project_id", "secret_name", name="uq_secret_mappings_project_secret"),
        CheckConstraint("secret_name ~ '^[A-Z][A-Z0-9_]*$'", name="ck_secret_mappings_name"),
        Index("ix_secret_mappings_sync_status", "sync_status"),
    )


class ExclusionPattern(Base):
    """Regex that keeps matching secret names out of every sync run.

    Global patterns have no project; project patterns always have one.
    """

    __tablename__ = "secret_exclusion_patterns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    project_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    pattern: Mapped[str] = mapped_column(String(200), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_global: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "(is_global AND project_id IS NULL) OR (NOT is_global AND project_id IS NOT NULL)",
            name="ck_secret_exclusion_patterns_scope",
        ),
        UniqueConstraint("project_id", "pattern", name="uq_secret_exclusion_patterns_project"),
        Index("ix_secret_exclusion_patterns_global", "is_global"),
    )


class QuotaRecord(Base):
    """Last observed remote rate-limit counter per (account, category)."""

    __tablename__ = "api_quotas"

    account: Mapped[str] = mapped_column(String(255), primary_key=True)
    category: Mapped[str] = mapped_column(String(20), primary_key=True)  # core, secrets, graphql
    remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_value: Mapped[int] = mapped_column(Integer, nullable=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    last_checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("remaining >= 0", name="ck_api_quotas_remaining"),
        Index("ix_api_quotas_reset_at", "reset_at"),
    )


class EnvironmentConfig(Base):
    """Provisioned deployment environment for a project.

    secrets lists names and last-updated timestamps only.
    """

    __tablename__ = "environment_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    project_id: Mapped[str] = mapped_column(String(63), nullable=False)
    environment_name: Mapped[str] = mapped_column(String(20), nullable=False)
    remote_environment_id: Mapped[int] = mapped_column(Integer, nullable=False)
    protection_rules: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    secrets: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    linked_resources: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # active, error

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("project_id", "environment_name", name="uq_environment_configs_project_env"),
        CheckConstraint(
            "environment_name IN ('dev', 'staging', 'production')",
            name="ck_environment_configs_name",
        ),
    )


class SecretSyncEvent(Base):
    """Append-only audit record, one per terminal operation outcome."""

    __tablename__ = "secret_sync_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    project_id: Mapped[str] = mapped_column(String(63), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # delete, sync, sync_all, validate, provision
    secret_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    affected_scopes: Mapped[list[str]] = mapped_column(ARRAY(String(64)), nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # success, failure, partial, skipped, conflict
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_secret_sync_events_project_created", "project_id", "created_at"),
        Index("ix_secret_sync_events_correlation", "correlation_id"),
    )
