"""
Secret synchronization from the Actions source scope to target scopes.

A secret is fingerprinted with SHA-256 and compared against the fingerprint
recorded at its last confirmed write. A different value is only written when
the caller passes force=True; otherwise the attempt is reported as a conflict
and nothing is touched. Plaintext is never stored, logged or read back.

Targets:
- codespaces, dependabot, environment:<name>: GitHub stores, sealed per
  destination key, each write admitted against the secrets quota
- cloudflare-worker, cloudflare-pages: Cloudflare API, plaintext over TLS

Per-target hashes let a retry after a partial failure write only the targets
that did not succeed. Callers must serialize syncs of the same
(project, secret name); the read-compare-write sequence is not atomic.
"""

import asyncio
import hashlib
import re
import uuid
from dataclasses import dataclass, field

from secretsync.context import SyncContext
from secretsync.db.models import utc_now
from secretsync.errors import (
    DeadlineExceededError,
    EncryptionUnavailableError,
    QuotaExhaustedError,
    RemoteRejectedError,
    SecretSyncError,
    ValueConflictError,
)
from secretsync.logging_config import get_logger
from secretsync.remote.github import (
    SCOPE_CODESPACES,
    SCOPE_DEPENDABOT,
    SCOPE_ENVIRONMENT,
    SecretDestination,
)
from secretsync.services import audit_service as audit
from secretsync.services.audit_service import AuditRecord, AuditSink, Stopwatch
from secretsync.services.encryption_service import EncryptionCache
from secretsync.services.exclusion_service import ExclusionMatcher, load_matcher
from secretsync.services.quota_service import QuotaGovernor
from secretsync.services.retry import Deadline, RetryPolicy, call_with_retry
from secretsync.sources import SecretSource
from secretsync.store.protocol import SecretMappingRecord, SyncStore

logger = get_logger(__name__)

SOURCE_SCOPE = "actions"

TARGET_CODESPACES = SCOPE_CODESPACES
TARGET_DEPENDABOT = SCOPE_DEPENDABOT
TARGET_CLOUDFLARE_WORKER = "cloudflare-worker"
TARGET_CLOUDFLARE_PAGES = "cloudflare-pages"
ENVIRONMENT_TARGET_PREFIX = "environment:"

DEFAULT_TARGETS = (TARGET_CODESPACES, TARGET_DEPENDABOT)

# Mapping / result statuses
STATUS_PENDING = "pending"
STATUS_SYNCED = "synced"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"
STATUS_SKIPPED = "skipped"

# Per-target outcomes
TARGET_SYNCED = "synced"
TARGET_UNCHANGED = "unchanged"
TARGET_FAILED = "failed"

SECRET_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")

# Failures that are surfaced to the caller when they account for every target
_ESCALATED = (QuotaExhaustedError, EncryptionUnavailableError, DeadlineExceededError)

_ERROR_STATUSES = (audit.STATUS_FAILURE, audit.STATUS_PARTIAL, audit.STATUS_CONFLICT)


def fingerprint(value: str) -> str:
    """One-way SHA-256 hex digest of a secret value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def validate_target(scope: str) -> None:
    if scope in (TARGET_CODESPACES, TARGET_DEPENDABOT, TARGET_CLOUDFLARE_WORKER, TARGET_CLOUDFLARE_PAGES):
        return
    if scope.startswith(ENVIRONMENT_TARGET_PREFIX) and scope[len(ENVIRONMENT_TARGET_PREFIX) :]:
        return
    raise ValueError(f"Unsupported target scope: {scope}")


def github_destination(ctx: SyncContext, scope: str) -> SecretDestination | None:
    """GitHub store for a target scope, or None for non-GitHub targets."""
    if scope in (TARGET_CODESPACES, TARGET_DEPENDABOT):
        return SecretDestination(scope=scope, owner=ctx.owner, repo=ctx.repo)
    if scope.startswith(ENVIRONMENT_TARGET_PREFIX):
        return SecretDestination(
            scope=SCOPE_ENVIRONMENT,
            owner=ctx.owner,
            repo=ctx.repo,
            environment=scope[len(ENVIRONMENT_TARGET_PREFIX) :],
        )
    return None


@dataclass
class TargetOutcome:
    scope: str
    status: str
    error: str | None = None
    exc: BaseException | None = field(default=None, repr=False, compare=False)


@dataclass
class SyncResult:
    """Outcome of one secret's sync attempt."""

    secret_name: str
    status: str
    targets: list[TargetOutcome] = field(default_factory=list)
    reason: str | None = None
    conflict: ValueConflictError | None = field(default=None, repr=False, compare=False)

    @property
    def synced_scopes(self) -> list[str]:
        return [t.scope for t in self.targets if t.status == TARGET_SYNCED]

    @property
    def unchanged_scopes(self) -> list[str]:
        return [t.scope for t in self.targets if t.status == TARGET_UNCHANGED]

    @property
    def failed_scopes(self) -> list[str]:
        return [t.scope for t in self.targets if t.status == TARGET_FAILED]


@dataclass
class SyncSummary:
    correlation_id: uuid.UUID
    total: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    conflict: int = 0
    results: list[SyncResult] = field(default_factory=list)
    duration_ms: int = 0

    def add(self, result: SyncResult) -> None:
        self.results.append(result)
        self.total += 1
        if result.status == STATUS_SYNCED:
            self.synced += 1
        elif result.status == STATUS_SKIPPED:
            self.skipped += 1
        elif result.status == STATUS_CONFLICT:
            self.conflict += 1
        else:
            self.failed += 1


class SecretSyncService:
    """Conflict-safe propagation of secret values to target scopes."""

    def __init__(
        self,
        store: SyncStore,
        audit_sink: AuditSink,
        quota: QuotaGovernor,
        encryption: EncryptionCache,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._quota = quota
        self._encryption = encryption
        self._retry_policy = retry_policy or RetryPolicy()

    # --- Public operations ---

    async def sync_secret(
        self,
        ctx: SyncContext,
        name: str,
        value: str,
        target_scopes: list[str] | tuple[str, ...] = DEFAULT_TARGETS,
        *,
        force: bool = False,
        correlation_id: uuid.UUID | None = None,
        deadline: Deadline | None = None,
    ) -> SyncResult:
        """Sync one secret to every target scope.

        Conflicts and exclusions are returned as results. QuotaExhaustedError,
        EncryptionUnavailableError and DeadlineExceededError are raised when
        they caused every target to fail, after the mapping and audit entry
        have been written.
        """
        matcher = await load_matcher(self._store, ctx.project_id)
        return await self._sync_one(
            ctx,
            name,
            value,
            list(target_scopes),
            force=force,
            correlation_id=correlation_id or audit.new_correlation_id(),
            deadline=deadline,
            matcher=matcher,
        )

    async def overwrite_on_force(
        self,
        ctx: SyncContext,
        name: str,
        value: str,
        target_scopes: list[str] | tuple[str, ...] = DEFAULT_TARGETS,
        **kwargs,
    ) -> SyncResult:
        """Resolve a reported conflict by writing the source value everywhere."""
        return await self.sync_secret(ctx, name, value, target_scopes, force=True, **kwargs)

    async def detect_conflict(
        self,
        ctx: SyncContext,
        name: str,
        value: str,
        target_scopes: list[str] | tuple[str, ...] = DEFAULT_TARGETS,
    ) -> ValueConflictError | None:
        """Return the conflict a non-forced sync would report, without writing anything."""
        existing = await self._store.get_secret_mapping(ctx.project_id, name)
        return _conflict_for(existing, name, fingerprint(value), list(target_scopes))

    async def sync_all_secrets(
        self,
        ctx: SyncContext,
        source: SecretSource,
        target_scopes: list[str] | tuple[str, ...] = DEFAULT_TARGETS,
        *,
        force: bool = False,
        deadline: Deadline | None = None,
    ) -> SyncSummary:
        """Sync every secret in the source scope, sharing one correlation id."""
        correlation_id = audit.new_correlation_id()
        watch = Stopwatch()
        targets = list(target_scopes)
        for scope in targets:
            validate_target(scope)

        summary = SyncSummary(correlation_id=correlation_id)
        matcher = await load_matcher(self._store, ctx.project_id)
        try:
            secrets = await source.list_secrets()
        except Exception as exc:
            logger.error(
                "Failed to enumerate source secrets",
                project_id=ctx.project_id,
                error=str(exc),
                correlation_id=str(correlation_id),
            )
            await self._audit.append(
                AuditRecord(
                    project_id=ctx.project_id,
                    actor_id=ctx.actor_id,
                    operation=audit.OP_SYNC_ALL,
                    affected_scopes=[SOURCE_SCOPE, *targets],
                    status=audit.STATUS_FAILURE,
                    success_count=0,
                    failure_count=1,
                    correlation_id=correlation_id,
                    duration_ms=watch.elapsed_ms,
                    error_message=f"Could not read source secrets: {exc}",
                    metadata={"force": force},
                )
            )
            raise

        logger.info(
            "Starting bulk secret sync",
            project_id=ctx.project_id,
            secret_count=len(secrets),
            targets=targets,
            correlation_id=str(correlation_id),
        )

        aborted: DeadlineExceededError | None = None
        for name in sorted(secrets):
            try:
                result = await self._sync_one(
                    ctx,
                    name,
                    secrets[name],
                    targets,
                    force=force,
                    correlation_id=correlation_id,
                    deadline=deadline,
                    matcher=matcher,
                )
            except DeadlineExceededError as exc:
                aborted = exc
                break
            except (QuotaExhaustedError, EncryptionUnavailableError, ValueError) as exc:
                result = SyncResult(
                    secret_name=name,
                    status=STATUS_FAILED,
                    targets=[TargetOutcome(scope, TARGET_FAILED, str(exc)) for scope in targets],
                    reason=str(exc),
                )
            summary.add(result)

        summary.duration_ms = watch.elapsed_ms
        await self._audit.append(
            AuditRecord(
                project_id=ctx.project_id,
                actor_id=ctx.actor_id,
                operation=audit.OP_SYNC_ALL,
                affected_scopes=[SOURCE_SCOPE, *targets],
                status=audit.outcome_status(summary.synced, summary.failed)
                if aborted is None
                else audit.STATUS_FAILURE,
                success_count=summary.synced,
                failure_count=summary.failed,
                correlation_id=correlation_id,
                duration_ms=summary.duration_ms,
                error_message=str(aborted) if aborted else None,
                metadata={
                    "total": len(secrets),
                    "processed": summary.total,
                    "skipped": summary.skipped,
                    "conflict": summary.conflict,
                    "force": force,
                },
            )
        )

        logger.info(
            "Bulk secret sync finished",
            project_id=ctx.project_id,
            total=summary.total,
            synced=summary.synced,
            skipped=summary.skipped,
            failed=summary.failed,
            conflict=summary.conflict,
            duration_ms=summary.duration_ms,
            correlation_id=str(correlation_id),
        )
        if aborted is not None:
            raise aborted
        return summary

    async def delete_secret(
        self,
        ctx: SyncContext,
        name: str,
        target_scopes: list[str] | tuple[str, ...] = DEFAULT_TARGETS,
        *,
        deadline: Deadline | None = None,
    ) -> SyncResult:
        """Remove a secret from target scopes and forget their recorded hashes."""
        correlation_id = audit.new_correlation_id()
        watch = Stopwatch()
        targets = list(target_scopes)
        for scope in targets:
            validate_target(scope)

        outcomes = await asyncio.gather(
            *(self._delete_target(ctx, scope, name, deadline) for scope in targets)
        )
        deleted = [o.scope for o in outcomes if o.status != TARGET_FAILED]

        existing = await self._store.get_secret_mapping(ctx.project_id, name)
        if existing is not None and deleted:
            existing.target_scopes = [s for s in existing.target_scopes if s not in deleted]
            existing.scope_hashes = {
                s: h for s, h in existing.scope_hashes.items() if s not in deleted
            }
            await self._store.upsert_secret_mapping(existing)

        failed = [o for o in outcomes if o.status == TARGET_FAILED]
        result = SyncResult(
            secret_name=name,
            status=STATUS_FAILED if failed else STATUS_SYNCED,
            targets=list(outcomes),
            reason=_error_summary(failed),
        )
        await self._audit.append(
            AuditRecord(
                project_id=ctx.project_id,
                actor_id=ctx.actor_id,
                operation=audit.OP_DELETE,
                secret_name=name,
                affected_scopes=targets,
                status=audit.outcome_status(len(deleted), len(failed)),
                success_count=len(deleted),
                failure_count=len(failed),
                correlation_id=correlation_id,
                duration_ms=watch.elapsed_ms,
                error_message=result.reason,
            )
        )
        return result

    # --- Core flow ---

    async def _sync_one(
        self,
        ctx: SyncContext,
        name: str,
        value: str,
        targets: list[str],
        *,
        force: bool,
        correlation_id: uuid.UUID,
        deadline: Deadline | None,
        matcher: ExclusionMatcher,
    ) -> SyncResult:
        watch = Stopwatch()
        log = logger.bind(
            project_id=ctx.project_id, secret_name=name, correlation_id=str(correlation_id)
        )

        excluded = matcher.match(name)
        if excluded is not None:
            log.info("Secret excluded from sync", pattern=excluded.pattern, is_global=excluded.is_global)
            await self._mark_excluded(ctx.project_id, name)
            result = SyncResult(
                secret_name=name,
                status=STATUS_SKIPPED,
                reason=f"Matches exclusion pattern {excluded.pattern}",
            )
            await self._record(
                ctx, result, targets, correlation_id, watch,
                status=audit.STATUS_SKIPPED,
                metadata={"pattern": excluded.pattern, "is_global": excluded.is_global},
            )
            return result

        try:
            if not SECRET_NAME_RE.match(name):
                raise ValueError(f"Invalid secret name: {name}")
            if not targets:
                raise ValueError("At least one target scope is required")
            for scope in targets:
                validate_target(scope)
        except ValueError as exc:
            result = SyncResult(secret_name=name, status=STATUS_FAILED, reason=str(exc))
            await self._record(ctx, result, targets, correlation_id, watch, status=audit.STATUS_FAILURE)
            raise

        new_hash = fingerprint(value)
        existing = await self._store.get_secret_mapping(ctx.project_id, name)

        if not force:
            conflict = _conflict_for(existing, name, new_hash, targets)
            if conflict is not None:
                log.warning("Secret value conflict", target_scopes=conflict.target_scopes)
                existing.sync_status = STATUS_CONFLICT
                existing.error_message = str(conflict)
                await self._store.upsert_secret_mapping(existing)
                result = SyncResult(
                    secret_name=name,
                    status=STATUS_CONFLICT,
                    reason=str(conflict),
                    conflict=conflict,
                )
                await self._record(
                    ctx, result, targets, correlation_id, watch,
                    status=audit.STATUS_CONFLICT,
                    metadata={"conflict_scopes": conflict.target_scopes},
                )
                return result

        previous = existing.scope_hashes if existing is not None else {}
        pending = [scope for scope in targets if previous.get(scope) != new_hash]
        written = await asyncio.gather(
            *(self._write_target(ctx, scope, name, value, deadline) for scope in pending)
        )
        by_scope = {o.scope: o for o in written}
        outcomes = [by_scope.get(scope) or TargetOutcome(scope, TARGET_UNCHANGED) for scope in targets]

        record = await self._persist(ctx.project_id, name, existing, new_hash, targets, outcomes)
        failed = [o for o in outcomes if o.status == TARGET_FAILED]
        succeeded = len(outcomes) - len(failed)
        result = SyncResult(
            secret_name=name,
            status=record.sync_status,
            targets=outcomes,
            reason=record.error_message,
        )
        await self._record(
            ctx, result, targets, correlation_id, watch,
            status=audit.outcome_status(succeeded, len(failed)),
            success_count=succeeded,
            failure_count=len(failed),
            metadata={
                "synced": result.synced_scopes,
                "unchanged": result.unchanged_scopes,
                "failed": result.failed_scopes,
                "force": force,
            },
        )
        log.info(
            "Secret sync finished",
            status=result.status,
            synced=result.synced_scopes,
            unchanged=result.unchanged_scopes,
            failed=result.failed_scopes,
        )

        if failed and succeeded == 0:
            escalated = [o.exc for o in failed if isinstance(o.exc, _ESCALATED)]
            if len(escalated) == len(failed):
                raise escalated[0]
        return result

    async def _write_target(
        self,
        ctx: SyncContext,
        scope: str,
        name: str,
        value: str,
        deadline: Deadline | None,
    ) -> TargetOutcome:
        try:
            destination = github_destination(ctx, scope)
            if destination is not None:
                await self._write_github(ctx, destination, name, value, deadline)
            elif scope == TARGET_CLOUDFLARE_WORKER:
                await self._write_cloudflare_worker(ctx, name, value, deadline)
            else:
                await self._write_cloudflare_pages(ctx, name, value, deadline)
        except (SecretSyncError, ValueError) as exc:
            logger.warning(
                "Target write failed",
                project_id=ctx.project_id,
                secret_name=name,
                scope=scope,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return TargetOutcome(scope, TARGET_FAILED, str(exc), exc)
        return TargetOutcome(scope, TARGET_SYNCED)

    async def _write_github(
        self,
        ctx: SyncContext,
        destination: SecretDestination,
        name: str,
        value: str,
        deadline: Deadline | None,
    ) -> None:
        # One request for the write, plus one for the key on a cache miss
        required = 1 if self._encryption.is_cached(destination) else 2
        await self._quota.block_if_insufficient(ctx, "secrets", required, deadline=deadline)
        sealed = await self._encryption.encrypt(ctx.github, destination, value, deadline=deadline)
        try:
            await call_with_retry(
                lambda: ctx.github.put_secret(destination, name, sealed.encrypted_value, sealed.key_id),
                f"write {name} to {destination.identity}",
                policy=self._retry_policy,
                deadline=deadline,
            )
        except RemoteRejectedError as exc:
            if exc.status_code == 422:
                # Destination could not open the box; its key has probably rotated
                self._encryption.invalidate(destination)
            raise

    async def _write_cloudflare_worker(
        self, ctx: SyncContext, name: str, value: str, deadline: Deadline | None
    ) -> None:
        if ctx.cloudflare is None or not ctx.cloudflare_account_id or not ctx.cloudflare_worker_name:
            raise ValueError("Cloudflare worker target is not configured for this project")
        await call_with_retry(
            lambda: ctx.cloudflare.put_worker_secret(
                ctx.cloudflare_account_id, ctx.cloudflare_worker_name, name, value
            ),
            f"write {name} to worker {ctx.cloudflare_worker_name}",
            policy=self._retry_policy,
            deadline=deadline,
        )

    async def _write_cloudflare_pages(
        self, ctx: SyncContext, name: str, value: str, deadline: Deadline | None
    ) -> None:
        if ctx.cloudflare is None or not ctx.cloudflare_account_id or not ctx.cloudflare_pages_project:
            raise ValueError("Cloudflare Pages target is not configured for this project")
        await call_with_retry(
            lambda: ctx.cloudflare.set_pages_secret(
                ctx.cloudflare_account_id,
                ctx.cloudflare_pages_project,
                name,
                value,
                ctx.cloudflare_pages_environment,
            ),
            f"write {name} to pages {ctx.cloudflare_pages_project}",
            policy=self._retry_policy,
            deadline=deadline,
        )

    async def _delete_target(
        self, ctx: SyncContext, scope: str, name: str, deadline: Deadline | None
    ) -> TargetOutcome:
        try:
            destination = github_destination(ctx, scope)
            if destination is not None:
                await self._quota.block_if_insufficient(ctx, "secrets", deadline=deadline)
                await call_with_retry(
                    lambda: ctx.github.delete_secret(destination, name),
                    f"delete {name} from {destination.identity}",
                    policy=self._retry_policy,
                    deadline=deadline,
                )
            elif scope == TARGET_CLOUDFLARE_WORKER:
                if ctx.cloudflare is None or not ctx.cloudflare_account_id or not ctx.cloudflare_worker_name:
                    raise ValueError("Cloudflare worker target is not configured for this project")
                await call_with_retry(
                    lambda: ctx.cloudflare.delete_worker_secret(
                        ctx.cloudflare_account_id, ctx.cloudflare_worker_name, name
                    ),
                    f"delete {name} from worker {ctx.cloudflare_worker_name}",
                    policy=self._retry_policy,
                    deadline=deadline,
                )
            else:
                if ctx.cloudflare is None or not ctx.cloudflare_account_id or not ctx.cloudflare_pages_project:
                    raise ValueError("Cloudflare Pages target is not configured for this project")
                await call_with_retry(
                    lambda: ctx.cloudflare.delete_pages_secret(
                        ctx.cloudflare_account_id,
                        ctx.cloudflare_pages_project,
                        name,
                        ctx.cloudflare_pages_environment,
                    ),
                    f"delete {name} from pages {ctx.cloudflare_pages_project}",
                    policy=self._retry_policy,
                    deadline=deadline,
                )
        except (SecretSyncError, ValueError) as exc:
            return TargetOutcome(scope, TARGET_FAILED, str(exc), exc)
        return TargetOutcome(scope, TARGET_SYNCED)

    # --- Persistence and audit ---

    async def _persist(
        self,
        project_id: str,
        name: str,
        existing: SecretMappingRecord | None,
        new_hash: str,
        targets: list[str],
        outcomes: list[TargetOutcome],
    ) -> SecretMappingRecord:
        record = existing or SecretMappingRecord(project_id=project_id, secret_name=name)
        failed = [o for o in outcomes if o.status == TARGET_FAILED]
        advanced = [o.scope for o in outcomes if o.status != TARGET_FAILED]

        for scope in advanced:
            record.scope_hashes[scope] = new_hash
        if any(o.status == TARGET_SYNCED for o in outcomes):
            record.value_hash = new_hash
            record.last_synced_at = utc_now()
        record.target_scopes = list(dict.fromkeys([*record.target_scopes, *targets]))
        record.source_scope = SOURCE_SCOPE
        record.is_excluded = False
        record.sync_status = STATUS_FAILED if failed else STATUS_SYNCED
        record.error_message = _error_summary(failed)

        await self._store.upsert_secret_mapping(record)
        return record

    async def _mark_excluded(self, project_id: str, name: str) -> None:
        record = await self._store.get_secret_mapping(project_id, name)
        if record is None:
            record = SecretMappingRecord(project_id=project_id, secret_name=name)
        if record.is_excluded:
            return
        record.is_excluded = True
        await self._store.upsert_secret_mapping(record)

    async def _record(
        self,
        ctx: SyncContext,
        result: SyncResult,
        targets: list[str],
        correlation_id: uuid.UUID,
        watch: Stopwatch,
        *,
        status: str,
        success_count: int = 0,
        failure_count: int = 0,
        metadata: dict | None = None,
    ) -> None:
        if status == audit.STATUS_FAILURE and failure_count == 0:
            failure_count = max(1, len(targets))
        await self._audit.append(
            AuditRecord(
                project_id=ctx.project_id,
                actor_id=ctx.actor_id,
                operation=audit.OP_SYNC,
                secret_name=result.secret_name,
                affected_scopes=targets,
                status=status,
                success_count=success_count,
                failure_count=failure_count,
                correlation_id=correlation_id,
                duration_ms=watch.elapsed_ms,
                error_message=result.reason if status in _ERROR_STATUSES else None,
                metadata=metadata or {},
            )
        )


def _conflict_for(
    existing: SecretMappingRecord | None,
    name: str,
    new_hash: str,
    targets: list[str],
) -> ValueConflictError | None:
    if existing is None or existing.value_hash is None or existing.value_hash == new_hash:
        return None
    diverged = [scope for scope in targets if existing.scope_hashes.get(scope) != new_hash]
    if not diverged:
        # The requested targets already hold the new value; the confirmed
        # value lives elsewhere.
        diverged = [
            scope for scope, h in existing.scope_hashes.items() if h == existing.value_hash
        ] or list(targets)
    return ValueConflictError(name, existing.source_scope or SOURCE_SCOPE, diverged)


def _error_summary(failed: list[TargetOutcome]) -> str | None:
    if not failed:
        return None
    return "; ".join(f"{o.scope}: {o.error}" for o in failed)
