"""
PostgreSQL-backed SyncStore and AuditSink.

Each method runs in its own short transaction; no session is held across a
remote call. Upserts use INSERT ... ON CONFLICT DO UPDATE on the natural key.
"""

from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from secretsync.db.models import (
    EnvironmentConfig,
    ExclusionPattern,
    QuotaRecord,
    SecretMapping,
    SecretSyncEvent,
    utc_now,
)
from secretsync.db.session import session_scope
from secretsync.logging_config import get_logger
from secretsync.services.audit_service import AuditRecord
from secretsync.store.protocol import (
    EnvironmentRecord,
    ExclusionRule,
    QuotaSnapshot,
    SecretMappingRecord,
)

logger = get_logger(__name__)


def _mapping_record(row: SecretMapping) -> SecretMappingRecord:
    return SecretMappingRecord(
        project_id=row.project_id,
        secret_name=row.secret_name,
        value_hash=row.value_hash,
        source_scope=row.source_scope,
        target_scopes=list(row.target_scopes or []),
        scope_hashes=dict(row.scope_hashes or {}),
        is_excluded=row.is_excluded,
        sync_status=row.sync_status,
        error_message=row.error_message,
        last_synced_at=row.last_synced_at,
    )


def _environment_record(row: EnvironmentConfig) -> EnvironmentRecord:
    return EnvironmentRecord(
        project_id=row.project_id,
        environment_name=row.environment_name,
        remote_environment_id=row.remote_environment_id,
        protection_rules=dict(row.protection_rules or {}),
        secrets=list(row.secrets or []),
        linked_resources=dict(row.linked_resources or {}),
        status=row.status,
    )


class SqlSyncStore:
    """SyncStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    # --- Secret mappings ---

    async def get_secret_mapping(
        self, project_id: str, secret_name: str
    ) -> SecretMappingRecord | None:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(SecretMapping).where(
                    SecretMapping.project_id == project_id,
                    SecretMapping.secret_name == secret_name,
                )
            )
            row = result.scalar_one_or_none()
            return _mapping_record(row) if row is not None else None

    async def list_secret_mappings(
        self, project_id: str, secret_names: list[str] | None = None
    ) -> list[SecretMappingRecord]:
        query = select(SecretMapping).where(SecretMapping.project_id == project_id)
        if secret_names:
            query = query.where(SecretMapping.secret_name.in_(secret_names))
        async with session_scope(self._factory) as db:
            result = await db.execute(query.order_by(SecretMapping.secret_name))
            return [_mapping_record(row) for row in result.scalars().all()]

    async def upsert_secret_mapping(self, record: SecretMappingRecord) -> None:
        now = utc_now()
        values = {
            "project_id": record.project_id,
            "secret_name": record.secret_name,
            "value_hash": record.value_hash,
            "source_scope": record.source_scope,
            "target_scopes": record.target_scopes,
            "scope_hashes": record.scope_hashes,
            "is_excluded": record.is_excluded,
            "sync_status": record.sync_status,
            "error_message": record.error_message,
            "last_synced_at": record.last_synced_at,
            "updated_at": now,
        }
        stmt = insert(SecretMapping).values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_secret_mappings_project_secret",
            set_={k: v for k, v in values.items() if k not in ("project_id", "secret_name")},
        )
        async with session_scope(self._factory) as db:
            await db.execute(stmt)

    # --- Exclusions ---

    async def list_exclusion_patterns(self, project_id: str) -> list[ExclusionRule]:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(ExclusionPattern)
                .where(
                    or_(
                        ExclusionPattern.is_global.is_(True),
                        ExclusionPattern.project_id == project_id,
                    )
                )
                # Global rows first
                .order_by(ExclusionPattern.is_global.desc(), ExclusionPattern.created_at)
            )
            return [
                ExclusionRule(
                    pattern=row.pattern,
                    is_global=row.is_global,
                    project_id=row.project_id,
                    reason=row.reason,
                )
                for row in result.scalars().all()
            ]

    # --- Quota ---

    async def get_quota(self, account: str, category: str) -> QuotaSnapshot | None:
        async with session_scope(self._factory) as db:
            row = await db.get(QuotaRecord, (account, category))
            if row is None:
                return None
            return QuotaSnapshot(
                account=row.account,
                category=row.category,
                remaining=row.remaining,
                limit=row.limit_value,
                reset_at=row.reset_at,
                last_checked_at=row.last_checked_at,
            )

    async def upsert_quota(self, snapshot: QuotaSnapshot) -> None:
        now = utc_now()
        checked = snapshot.last_checked_at or now
        stmt = insert(QuotaRecord).values(
            account=snapshot.account,
            category=snapshot.category,
            remaining=snapshot.remaining,
            limit_value=snapshot.limit,
            reset_at=snapshot.reset_at,
            last_checked_at=checked,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[QuotaRecord.account, QuotaRecord.category],
            set_={
                "remaining": snapshot.remaining,
                "limit_value": snapshot.limit,
                "reset_at": snapshot.reset_at,
                "last_checked_at": checked,
                "updated_at": now,
            },
        )
        async with session_scope(self._factory) as db:
            await db.execute(stmt)

    # --- Environments ---

    async def get_environment_config(
        self, project_id: str, environment_name: str
    ) -> EnvironmentRecord | None:
        async with session_scope(self._factory) as db:
            row = await self._environment_row(db, project_id, environment_name)
            return _environment_record(row) if row is not None else None

    async def upsert_environment_config(self, record: EnvironmentRecord) -> bool:
        async with session_scope(self._factory) as db:
            row = await self._environment_row(db, record.project_id, record.environment_name)
            if row is None:
                db.add(
                    EnvironmentConfig(
                        project_id=record.project_id,
                        environment_name=record.environment_name,
                        remote_environment_id=record.remote_environment_id,
                        protection_rules=record.protection_rules,
                        secrets=record.secrets,
                        linked_resources=record.linked_resources,
                        status=record.status,
                    )
                )
                await db.flush()
                return True

            row.remote_environment_id = record.remote_environment_id
            row.protection_rules = record.protection_rules
            row.secrets = record.secrets
            row.linked_resources = record.linked_resources
            row.status = record.status
            await db.flush()
            return False

    @staticmethod
    async def _environment_row(
        db: AsyncSession, project_id: str, environment_name: str
    ) -> EnvironmentConfig | None:
        result = await db.execute(
            select(EnvironmentConfig)
            .where(
                EnvironmentConfig.project_id == project_id,
                EnvironmentConfig.environment_name == environment_name,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()


class SqlAuditSink:
    """AuditSink writing secret_sync_events rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def append(self, record: AuditRecord) -> None:
        async with session_scope(self._factory) as db:
            db.add(
                SecretSyncEvent(
                    project_id=record.project_id,
                    actor_id=record.actor_id,
                    operation=record.operation,
                    secret_name=record.secret_name,
                    affected_scopes=record.affected_scopes,
                    status=record.status,
                    success_count=record.success_count,
                    failure_count=record.failure_count,
                    error_message=record.error_message,
                    correlation_id=record.correlation_id,
                    duration_ms=record.duration_ms,
                    event_metadata=record.metadata,
                )
            )
        logger.debug(
            "Audit event recorded",
            operation=record.operation,
            status=record.status,
            correlation_id=str(record.correlation_id),
        )
