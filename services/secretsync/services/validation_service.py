"""Secret presence and conflict validation.

Reports, per secret and target scope, whether the last confirmed write is
missing or diverges from the source fingerprint, with remediation steps.
Works from secret_mappings alone unless check_remote is set, in which case
GitHub (and Cloudflare Worker) secret names are listed per scope and
compared as well. Values are never needed.
"""

import uuid
from dataclasses import dataclass, field

from secretsync.context import SyncContext
from secretsync.logging_config import get_logger
from secretsync.services import audit_service as audit
from secretsync.services.audit_service import AuditRecord, AuditSink, Stopwatch
from secretsync.services.quota_service import QuotaGovernor
from secretsync.services.retry import Deadline, RetryPolicy, call_with_retry
from secretsync.services.secret_sync_service import (
    DEFAULT_TARGETS,
    SOURCE_SCOPE,
    STATUS_CONFLICT,
    TARGET_CLOUDFLARE_WORKER,
    github_destination,
    validate_target,
)
from secretsync.store.protocol import SecretMappingRecord, SyncStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class MissingSecret:
    secret_name: str
    scope: str


@dataclass(frozen=True)
class SecretConflict:
    secret_name: str
    scopes: tuple[str, ...]


@dataclass
class ValidationResult:
    correlation_id: uuid.UUID
    missing: list[MissingSecret] = field(default_factory=list)
    conflicts: list[SecretConflict] = field(default_factory=list)
    total: int = 0
    remediation_steps: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def valid(self) -> bool:
        return not self.missing and not self.conflicts

    @property
    def valid_count(self) -> int:
        broken = {m.secret_name for m in self.missing} | {c.secret_name for c in self.conflicts}
        return self.total - len(broken)


def remediation_steps(missing: list[MissingSecret], conflicts: list[SecretConflict]) -> list[str]:
    by_secret: dict[str, list[str]] = {}
    for entry in missing:
        by_secret.setdefault(entry.secret_name, []).append(entry.scope)
    steps = [f"Add secret {name} to scopes: {', '.join(scopes)}" for name, scopes in by_secret.items()]
    steps.extend(
        f"Resolve conflict for {c.secret_name}: re-run secret sync with force=true to overwrite "
        f"{', '.join(c.scopes)}"
        for c in conflicts
    )
    return steps or ["All secrets valid. No action required."]


class SecretValidationService:
    def __init__(
        self,
        store: SyncStore,
        audit_sink: AuditSink,
        quota: QuotaGovernor | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._quota = quota
        self._retry_policy = retry_policy or RetryPolicy()

    async def validate_secrets(
        self,
        ctx: SyncContext,
        required_secrets: list[str] | None = None,
        target_scopes: list[str] | tuple[str, ...] = DEFAULT_TARGETS,
        *,
        check_remote: bool = False,
        deadline: Deadline | None = None,
    ) -> ValidationResult:
        watch = Stopwatch()
        targets = list(target_scopes)
        for scope in targets:
            validate_target(scope)

        mappings = {
            m.secret_name: m
            for m in await self._store.list_secret_mappings(ctx.project_id, required_secrets)
        }
        required = list(required_secrets) if required_secrets else sorted(
            name for name, m in mappings.items() if not m.is_excluded
        )
        remote = await self._remote_names(ctx, targets, deadline) if check_remote else {}

        result = ValidationResult(correlation_id=audit.new_correlation_id(), total=len(required))
        for name in required:
            mapping = mappings.get(name)
            result.missing.extend(
                MissingSecret(name, scope) for scope in _missing_scopes(mapping, targets, remote, name)
            )
            conflict = _conflict_scopes(mapping, targets)
            if conflict:
                result.conflicts.append(SecretConflict(name, tuple(conflict)))

        result.remediation_steps = remediation_steps(result.missing, result.conflicts)
        result.duration_ms = watch.elapsed_ms

        failures = len(result.missing) + len(result.conflicts)
        await self._audit.append(
            AuditRecord(
                project_id=ctx.project_id,
                actor_id=ctx.actor_id,
                operation=audit.OP_VALIDATE,
                affected_scopes=targets,
                status=audit.outcome_status(result.valid_count, failures),
                success_count=result.valid_count,
                failure_count=failures,
                correlation_id=result.correlation_id,
                duration_ms=result.duration_ms,
                metadata={
                    "missing": len(result.missing),
                    "conflict": len(result.conflicts),
                    "check_remote": check_remote,
                },
            )
        )
        logger.info(
            "Secret validation finished",
            project_id=ctx.project_id,
            total=result.total,
            missing=len(result.missing),
            conflict=len(result.conflicts),
        )
        return result

    async def _remote_names(
        self, ctx: SyncContext, targets: list[str], deadline: Deadline | None
    ) -> dict[str, set[str]]:
        names: dict[str, set[str]] = {}
        for scope in targets:
            destination = github_destination(ctx, scope)
            if destination is None:
                if scope == TARGET_CLOUDFLARE_WORKER and ctx.cloudflare is not None and (
                    ctx.cloudflare_account_id and ctx.cloudflare_worker_name
                ):
                    listed = await call_with_retry(
                        lambda: ctx.cloudflare.list_worker_secrets(
                            ctx.cloudflare_account_id, ctx.cloudflare_worker_name
                        ),
                        f"list worker secrets {ctx.cloudflare_worker_name}",
                        policy=self._retry_policy,
                        deadline=deadline,
                    )
                    names[scope] = {s["name"] for s in listed}
                continue
            if self._quota is not None:
                await self._quota.block_if_insufficient(ctx, "secrets", deadline=deadline)
            listed = await call_with_retry(
                lambda: ctx.github.list_secrets(destination),
                f"list secrets {destination.identity}",
                policy=self._retry_policy,
                deadline=deadline,
            )
            names[scope] = {s["name"] for s in listed}
        return names


def _missing_scopes(
    mapping: SecretMappingRecord | None,
    targets: list[str],
    remote: dict[str, set[str]],
    name: str,
) -> list[str]:
    if mapping is None:
        return list(targets)
    missing = []
    for scope in targets:
        # Never written, or left behind by a failed write of the current value
        if mapping.scope_hashes.get(scope) != mapping.value_hash or scope not in mapping.scope_hashes:
            missing.append(scope)
        elif scope in remote and name not in remote[scope]:
            missing.append(scope)
    return missing


def _conflict_scopes(mapping: SecretMappingRecord | None, targets: list[str]) -> list[str]:
    if mapping is None or mapping.sync_status != STATUS_CONFLICT:
        return []
    return [SOURCE_SCOPE, *targets]
