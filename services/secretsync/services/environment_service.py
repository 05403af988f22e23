"""
Deployment environment provisioning.

Creates or updates a GitHub deployment environment with tier-shaped
protection rules, writes its environment-scoped secrets and records the
result in environment_configs. Every step is idempotent, so a failed run is
retried by calling provision_environment again with the same input.

Tiers:
- dev: no restrictions
- staging: at most one required reviewer
- production: at least one reviewer, deployments limited to protected branches

Linked resources (Neon branch, Cloudflare Worker, Cloudflare Pages project)
are verified before anything is written remotely.
"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any

from secretsync.config import LinkedResourceMode, ProtectionBoundsConfig
from secretsync.context import SyncContext
from secretsync.db.models import utc_now
from secretsync.errors import (
    LinkedResourceMissingError,
    ProtectionRuleValidationError,
    QuotaExhaustedError,
    RemoteRejectedError,
    SecretSyncError,
)
from secretsync.logging_config import get_logger
from secretsync.remote.github import SCOPE_ENVIRONMENT, SecretDestination
from secretsync.services import audit_service as audit
from secretsync.services.audit_service import AuditRecord, AuditSink, Stopwatch
from secretsync.services.encryption_service import EncryptionCache
from secretsync.services.quota_service import QuotaGovernor
from secretsync.services.retry import Deadline, RetryPolicy, call_with_retry
from secretsync.services.secret_sync_service import SECRET_NAME_RE
from secretsync.store.protocol import EnvironmentRecord, SyncStore

logger = get_logger(__name__)

ENV_DEV = "dev"
ENV_STAGING = "staging"
ENV_PRODUCTION = "production"
ENVIRONMENT_NAMES = (ENV_DEV, ENV_STAGING, ENV_PRODUCTION)

RESULT_CREATED = "created"
RESULT_UPDATED = "updated"

# Sub-steps, reported in audit entries when one fails
STEP_VALIDATE = "validate"
STEP_LINKED_RESOURCES = "linked_resources"
STEP_CREATE_ENVIRONMENT = "create_environment"
STEP_SECRETS = "secrets"
STEP_PERSIST = "persist"

# Error codes for provision_environments
CODE_CREATION_FAILED = "GITHUB_ENV_CREATION_FAILED"
CODE_REVIEWER_NOT_FOUND = "GITHUB_ENV_REVIEWER_NOT_FOUND"
CODE_PROTECTION_RULE_CONFLICT = "GITHUB_ENV_PROTECTION_RULE_CONFLICT"
CODE_PERMISSION_DENIED = "GITHUB_ENV_PERMISSION_DENIED"
CODE_RATE_LIMIT_EXHAUSTED = "GITHUB_ENV_RATE_LIMIT_EXHAUSTED"
CODE_INVALID_NAME = "GITHUB_ENV_INVALID_NAME"
CODE_REVIEWER_COUNT_INVALID = "GITHUB_ENV_REVIEWER_COUNT_INVALID"
CODE_WAIT_TIMER_INVALID = "GITHUB_ENV_WAIT_TIMER_INVALID"
CODE_LINKED_RESOURCE_NOT_FOUND = "GITHUB_ENV_LINKED_RESOURCE_NOT_FOUND"
CODE_SECRET_CREATION_FAILED = "GITHUB_ENV_SECRET_CREATION_FAILED"


@dataclass(frozen=True)
class ProtectionRules:
    """Requested protection for an environment.

    reviewer_ids are GitHub user IDs allowed to approve a deployment;
    required_reviewers is how many of them must approve (0 when none are
    required).
    """

    reviewer_ids: tuple[int, ...] = ()
    required_reviewers: int = 0
    restrict_to_main_branch: bool = False
    wait_timer_minutes: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProtectionRules":
        data = data or {}
        return cls(
            reviewer_ids=tuple(int(r) for r in data.get("reviewer_ids", ())),
            required_reviewers=int(data.get("required_reviewers", 0)),
            restrict_to_main_branch=bool(data.get("restrict_to_main_branch", False)),
            wait_timer_minutes=int(data.get("wait_timer_minutes", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_ids": list(self.reviewer_ids),
            "required_reviewers": self.required_reviewers,
            "restrict_to_main_branch": self.restrict_to_main_branch,
            "wait_timer_minutes": self.wait_timer_minutes,
        }


@dataclass(frozen=True)
class LinkedResources:
    neon_branch_id: str | None = None
    cloudflare_worker_name: str | None = None
    cloudflare_pages_project: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LinkedResources":
        data = data or {}
        return cls(
            neon_branch_id=data.get("neon_branch_id"),
            cloudflare_worker_name=data.get("cloudflare_worker_name"),
            cloudflare_pages_project=data.get("cloudflare_pages_project"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v}


@dataclass(frozen=True)
class EnvironmentSecret:
    name: str
    value: str = field(repr=False)


@dataclass(frozen=True)
class EnvironmentRequest:
    """Input for one environment in a batch."""

    name: str
    protection_rules: ProtectionRules = field(default_factory=ProtectionRules)
    secrets: tuple[EnvironmentSecret, ...] = ()
    linked_resources: LinkedResources = field(default_factory=LinkedResources)


@dataclass(frozen=True)
class ProvisionResult:
    environment_name: str
    remote_environment_id: int
    status: str  # created | updated
    secrets_written: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvisionError:
    environment_name: str
    code: str
    message: str


@dataclass
class ProvisionSummary:
    created: list[ProvisionResult] = field(default_factory=list)
    updated: list[ProvisionResult] = field(default_factory=list)
    errors: list[ProvisionError] = field(default_factory=list)


@dataclass
class _Progress:
    step: str = STEP_VALIDATE
    remote_environment_id: int | None = None
    secrets_written: list[str] = field(default_factory=list)


def validate_protection_rules(
    name: str, rules: ProtectionRules, bounds: ProtectionBoundsConfig
) -> ProtectionRules:
    """Check rules against tier shape and provider bounds. No remote calls.

    Returns the rules that apply to the tier: dev environments never carry
    protection, so rules requested for dev are dropped with a warning.
    """
    if name not in ENVIRONMENT_NAMES:
        raise ProtectionRuleValidationError(
            f"Environment name must be one of: {', '.join(ENVIRONMENT_NAMES)}",
            CODE_INVALID_NAME,
        )

    reviewers = len(rules.reviewer_ids)
    if reviewers > bounds.max_reviewers:
        raise ProtectionRuleValidationError(
            f"At most {bounds.max_reviewers} required reviewers are supported, got {reviewers}",
            CODE_REVIEWER_COUNT_INVALID,
        )
    if any(r <= 0 for r in rules.reviewer_ids):
        raise ProtectionRuleValidationError("Reviewer IDs must be positive", CODE_REVIEWER_COUNT_INVALID)
    if len(set(rules.reviewer_ids)) != reviewers:
        raise ProtectionRuleValidationError("Reviewer IDs must be unique", CODE_REVIEWER_COUNT_INVALID)
    if rules.required_reviewers < 0 or rules.required_reviewers > bounds.max_reviewers:
        raise ProtectionRuleValidationError(
            f"Required reviewers must be between 0 and {bounds.max_reviewers}, "
            f"got {rules.required_reviewers}",
            CODE_REVIEWER_COUNT_INVALID,
        )
    if rules.required_reviewers > reviewers:
        raise ProtectionRuleValidationError(
            f"{rules.required_reviewers} required reviewers requested but only {reviewers} reviewer IDs given",
            CODE_REVIEWER_COUNT_INVALID,
        )
    if not 0 <= rules.wait_timer_minutes <= bounds.max_wait_timer_minutes:
        raise ProtectionRuleValidationError(
            f"Wait timer must be between 0 and {bounds.max_wait_timer_minutes} minutes",
            CODE_WAIT_TIMER_INVALID,
        )

    if name == ENV_DEV:
        if rules != ProtectionRules():
            logger.warning("Ignoring protection rules for dev environment", rules=rules.to_dict())
        return ProtectionRules()
    if name == ENV_STAGING and (reviewers > 1 or rules.restrict_to_main_branch):
        raise ProtectionRuleValidationError(
            "staging environments take at most one reviewer and no branch restriction"
        )
    if name == ENV_PRODUCTION and reviewers == 0:
        raise ProtectionRuleValidationError(
            "production environments require at least one reviewer", CODE_REVIEWER_COUNT_INVALID
        )
    return rules


def environment_payload(name: str, rules: ProtectionRules) -> dict[str, Any]:
    """GitHub PUT /environments body for a tier.

    Every field is sent explicitly so a re-run also removes rules that are no
    longer requested.
    """
    restrict = name == ENV_PRODUCTION or rules.restrict_to_main_branch
    return {
        "wait_timer": 0 if name == ENV_DEV else rules.wait_timer_minutes,
        "reviewers": [{"type": "User", "id": r} for r in rules.reviewer_ids] if name != ENV_DEV else [],
        "deployment_branch_policy": (
            {"protected_branches": True, "custom_branch_policies": False} if restrict else None
        ),
    }


def error_code_for(exc: BaseException, step: str) -> str:
    """Stable error code for a failed provisioning run."""
    if isinstance(exc, ProtectionRuleValidationError):
        return exc.code
    if isinstance(exc, LinkedResourceMissingError):
        return CODE_LINKED_RESOURCE_NOT_FOUND
    if isinstance(exc, QuotaExhaustedError):
        return CODE_RATE_LIMIT_EXHAUSTED
    if isinstance(exc, RemoteRejectedError):
        if exc.status_code == 403:
            return CODE_PERMISSION_DENIED
        if exc.status_code in (404, 422) and "reviewer" in str(exc).lower():
            return CODE_REVIEWER_NOT_FOUND
        if exc.status_code == 422 and step == STEP_CREATE_ENVIRONMENT:
            return CODE_PROTECTION_RULE_CONFLICT
    if step == STEP_SECRETS:
        return CODE_SECRET_CREATION_FAILED
    return CODE_CREATION_FAILED


class EnvironmentService:
    """Idempotent provisioning of dev/staging/production environments."""

    def __init__(
        self,
        store: SyncStore,
        audit_sink: AuditSink,
        quota: QuotaGovernor,
        encryption: EncryptionCache,
        *,
        bounds: ProtectionBoundsConfig | None = None,
        linked_resource_mode: LinkedResourceMode = LinkedResourceMode.ENFORCE,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._quota = quota
        self._encryption = encryption
        self._bounds = bounds or ProtectionBoundsConfig()
        self._linked_mode = linked_resource_mode
        self._retry_policy = retry_policy or RetryPolicy()

    async def provision_environment(
        self,
        ctx: SyncContext,
        name: str,
        protection_rules: ProtectionRules | None = None,
        secrets: list[EnvironmentSecret] | tuple[EnvironmentSecret, ...] = (),
        linked_resources: LinkedResources | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> ProvisionResult:
        request = EnvironmentRequest(
            name=name,
            protection_rules=protection_rules or ProtectionRules(),
            secrets=tuple(secrets),
            linked_resources=linked_resources or LinkedResources(),
        )
        return await self._provision(ctx, request, _Progress(), deadline)

    async def provision_environments(
        self,
        ctx: SyncContext,
        requests: list[EnvironmentRequest],
        *,
        deadline: Deadline | None = None,
    ) -> ProvisionSummary:
        """Provision several environments; a failure in one does not stop the rest."""
        summary = ProvisionSummary()
        for request in requests:
            progress = _Progress()
            try:
                result = await self._provision(ctx, request, progress, deadline)
            except (SecretSyncError, ValueError) as exc:
                summary.errors.append(
                    ProvisionError(
                        environment_name=request.name,
                        code=error_code_for(exc, progress.step),
                        message=str(exc),
                    )
                )
                continue
            if result.status == RESULT_CREATED:
                summary.created.append(result)
            else:
                summary.updated.append(result)
        return summary

    async def check_linked_resources(
        self,
        ctx: SyncContext,
        resources: LinkedResources,
        *,
        deadline: Deadline | None = None,
    ) -> None:
        """Raise LinkedResourceMissingError naming every referenced resource that does not exist."""
        wanted = resources.to_dict()
        if not wanted:
            return
        if self._linked_mode == LinkedResourceMode.SKIP:
            for kind, ref in wanted.items():
                logger.warning(
                    "Linked resource not verified",
                    project_id=ctx.project_id,
                    resource_type=kind,
                    resource=ref,
                    mode=self._linked_mode.value,
                )
            return

        missing: list[str] = []
        if resources.neon_branch_id:
            if ctx.neon is None or not ctx.neon_project_id:
                missing.append(f"Neon branch {resources.neon_branch_id} (no Neon project configured)")
            elif not await call_with_retry(
                lambda: ctx.neon.branch_exists(ctx.neon_project_id, resources.neon_branch_id),
                f"lookup neon branch {resources.neon_branch_id}",
                policy=self._retry_policy,
                deadline=deadline,
            ):
                missing.append(f"Neon branch {resources.neon_branch_id} not found")

        if resources.cloudflare_worker_name or resources.cloudflare_pages_project:
            if ctx.cloudflare is None or not ctx.cloudflare_account_id:
                missing.extend(
                    f"Cloudflare {kind} {ref} (no Cloudflare account configured)"
                    for kind, ref in (
                        ("Worker", resources.cloudflare_worker_name),
                        ("Pages project", resources.cloudflare_pages_project),
                    )
                    if ref
                )
            else:
                if resources.cloudflare_worker_name and not await call_with_retry(
                    lambda: ctx.cloudflare.worker_exists(
                        ctx.cloudflare_account_id, resources.cloudflare_worker_name
                    ),
                    f"lookup worker {resources.cloudflare_worker_name}",
                    policy=self._retry_policy,
                    deadline=deadline,
                ):
                    missing.append(f"Cloudflare Worker {resources.cloudflare_worker_name} not found")
                if resources.cloudflare_pages_project and not await call_with_retry(
                    lambda: ctx.cloudflare.pages_project_exists(
                        ctx.cloudflare_account_id, resources.cloudflare_pages_project
                    ),
                    f"lookup pages project {resources.cloudflare_pages_project}",
                    policy=self._retry_policy,
                    deadline=deadline,
                ):
                    missing.append(
                        f"Cloudflare Pages project {resources.cloudflare_pages_project} not found"
                    )

        if missing:
            raise LinkedResourceMissingError(missing)

    async def _provision(
        self,
        ctx: SyncContext,
        request: EnvironmentRequest,
        progress: _Progress,
        deadline: Deadline | None,
    ) -> ProvisionResult:
        watch = Stopwatch()
        correlation_id = audit.new_correlation_id()
        name = request.name
        log = logger.bind(project_id=ctx.project_id, environment=name, correlation_id=str(correlation_id))

        try:
            progress.step = STEP_VALIDATE
            request = replace(
                request, protection_rules=validate_protection_rules(name, request.protection_rules, self._bounds)
            )
            for secret in request.secrets:
                if not SECRET_NAME_RE.match(secret.name):
                    raise ValueError(f"Invalid secret name: {secret.name}")

            progress.step = STEP_LINKED_RESOURCES
            await self.check_linked_resources(ctx, request.linked_resources, deadline=deadline)

            progress.step = STEP_CREATE_ENVIRONMENT
            await self._quota.block_if_insufficient(ctx, "core", deadline=deadline)
            payload = environment_payload(name, request.protection_rules)
            remote = await call_with_retry(
                lambda: ctx.github.create_or_update_environment(ctx.owner, ctx.repo, name, payload),
                f"create environment {name}",
                policy=self._retry_policy,
                deadline=deadline,
            )
            progress.remote_environment_id = int(remote["id"])
            log.info("Environment applied", remote_environment_id=progress.remote_environment_id)

            progress.step = STEP_SECRETS
            destination = SecretDestination(
                scope=SCOPE_ENVIRONMENT, owner=ctx.owner, repo=ctx.repo, environment=name
            )
            secret_entries: list[dict[str, Any]] = []
            for secret in request.secrets:
                await self._write_secret(ctx, destination, secret, deadline)
                progress.secrets_written.append(secret.name)
                secret_entries.append({"name": secret.name, "updated_at": utc_now().isoformat()})

            progress.step = STEP_PERSIST
            created = await self._store.upsert_environment_config(
                EnvironmentRecord(
                    project_id=ctx.project_id,
                    environment_name=name,
                    remote_environment_id=progress.remote_environment_id,
                    protection_rules=request.protection_rules.to_dict(),
                    secrets=await self._merge_secret_entries(ctx.project_id, name, secret_entries),
                    linked_resources=request.linked_resources.to_dict(),
                    status="active",
                )
            )
        except (SecretSyncError, ValueError) as exc:
            log.error(
                "Environment provisioning failed",
                step=progress.step,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._mark_error(ctx, request, progress)
            await self._audit.append(
                AuditRecord(
                    project_id=ctx.project_id,
                    actor_id=ctx.actor_id,
                    operation=audit.OP_PROVISION,
                    affected_scopes=[f"environment:{name}"],
                    status=audit.STATUS_FAILURE,
                    success_count=0,
                    failure_count=1,
                    correlation_id=correlation_id,
                    duration_ms=watch.elapsed_ms,
                    error_message=str(exc),
                    metadata={
                        "environment_name": name,
                        "failed_step": progress.step,
                        "remote_environment_id": progress.remote_environment_id,
                        "secrets_written": list(progress.secrets_written),
                    },
                )
            )
            raise

        status = RESULT_CREATED if created else RESULT_UPDATED
        await self._audit.append(
            AuditRecord(
                project_id=ctx.project_id,
                actor_id=ctx.actor_id,
                operation=audit.OP_PROVISION,
                affected_scopes=[f"environment:{name}"],
                status=audit.STATUS_SUCCESS,
                success_count=1,
                failure_count=0,
                correlation_id=correlation_id,
                duration_ms=watch.elapsed_ms,
                metadata={
                    "environment_name": name,
                    "result": status,
                    "remote_environment_id": progress.remote_environment_id,
                    "reviewer_ids": list(request.protection_rules.reviewer_ids),
                    "required_reviewers": request.protection_rules.required_reviewers,
                    "secret_count": len(request.secrets),
                },
            )
        )
        log.info("Environment provisioned", result=status, secret_count=len(request.secrets))
        return ProvisionResult(
            environment_name=name,
            remote_environment_id=progress.remote_environment_id,
            status=status,
            secrets_written=tuple(progress.secrets_written),
        )

    async def _write_secret(
        self,
        ctx: SyncContext,
        destination: SecretDestination,
        secret: EnvironmentSecret,
        deadline: Deadline | None,
    ) -> None:
        required = 1 if self._encryption.is_cached(destination) else 2
        await self._quota.block_if_insufficient(ctx, "secrets", required, deadline=deadline)
        sealed = await self._encryption.encrypt(ctx.github, destination, secret.value, deadline=deadline)
        try:
            await call_with_retry(
                lambda: ctx.github.put_secret(
                    destination, secret.name, sealed.encrypted_value, sealed.key_id
                ),
                f"write {secret.name} to {destination.identity}",
                policy=self._retry_policy,
                deadline=deadline,
            )
        except RemoteRejectedError as exc:
            if exc.status_code == 422:
                self._encryption.invalidate(destination)
            raise

    async def _merge_secret_entries(
        self, project_id: str, name: str, written: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Keep entries for secrets written by earlier runs, refreshing ones written now."""
        existing = await self._store.get_environment_config(project_id, name)
        entries = {e["name"]: e for e in (existing.secrets if existing else [])}
        entries.update({e["name"]: e for e in written})
        return sorted(entries.values(), key=lambda e: e["name"])

    async def _mark_error(
        self, ctx: SyncContext, request: EnvironmentRequest, progress: _Progress
    ) -> None:
        # Only environments that exist remotely get a local row
        if progress.remote_environment_id is None:
            return
        now = utc_now().isoformat()
        try:
            await self._store.upsert_environment_config(
                EnvironmentRecord(
                    project_id=ctx.project_id,
                    environment_name=request.name,
                    remote_environment_id=progress.remote_environment_id,
                    protection_rules=request.protection_rules.to_dict(),
                    secrets=await self._merge_secret_entries(
                        ctx.project_id,
                        request.name,
                        [{"name": s, "updated_at": now} for s in progress.secrets_written],
                    ),
                    linked_resources=request.linked_resources.to_dict(),
                    status="error",
                )
            )
        except Exception as exc:  # noqa: BLE001 - the provisioning error is re-raised by the caller
            logger.error(
                "Failed to record environment error state",
                project_id=ctx.project_id,
                environment=request.name,
                error=str(exc),
            )

