"""
Command-line entry point for scheduled and ad-hoc runs.

Run via: python -m secretsync.cli.sync <command> [options]

Commands:
  sync       Sync every secret in a dotenv file to the target scopes
  quota      Show the cached (or live) GitHub quota for an account
  provision  Provision environments described in a YAML file
  validate   Report missing and conflicting secrets

Reads configuration from SECRETSYNC_* environment variables and
/etc/secretsync/config.yaml. Exit status 75 means the run was refused for
quota or key availability and should be retried after the reported time.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import yaml

from secretsync.config import Settings, settings
from secretsync.context import SyncContext
from secretsync.db.session import close_db, init_db
from secretsync.errors import EncryptionUnavailableError, QuotaExhaustedError, SecretSyncError
from secretsync.logging_config import configure_logging, get_logger
from secretsync.remote.cloudflare import CloudflareClient
from secretsync.remote.github import GitHubClient
from secretsync.remote.neon import NeonClient
from secretsync.services.encryption_service import EncryptionCache
from secretsync.services.environment_service import (
    EnvironmentRequest,
    EnvironmentSecret,
    EnvironmentService,
    LinkedResources,
    ProtectionRules,
)
from secretsync.services.quota_service import QuotaGovernor
from secretsync.services.retry import Deadline, RetryPolicy
from secretsync.services.secret_sync_service import DEFAULT_TARGETS, SecretSyncService
from secretsync.services.validation_service import SecretValidationService
from secretsync.sources import DotenvSecretSource
from secretsync.store.sql import SqlAuditSink, SqlSyncStore

logger = get_logger("secretsync.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TEMPFAIL = 75


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="secretsync", description="Secret sync and environment provisioning")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_repo_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--project", required=True, help="Project identifier")
        p.add_argument("--owner", required=True, help="GitHub repository owner")
        p.add_argument("--repo", required=True, help="GitHub repository name")
        p.add_argument("--actor", default="cli", help="Actor recorded in audit entries")
        p.add_argument("--cloudflare-account", default=None)
        p.add_argument("--cloudflare-worker", default=None)
        p.add_argument("--cloudflare-pages-project", default=None)
        p.add_argument("--neon-project", default=None)
        p.add_argument("--deadline-seconds", type=float, default=None)

    p_sync = sub.add_parser("sync", help="Sync secrets from a dotenv file")
    add_repo_args(p_sync)
    p_sync.add_argument("--env-file", required=True, type=Path)
    p_sync.add_argument(
        "--targets",
        default=",".join(DEFAULT_TARGETS),
        help="Comma-separated target scopes",
    )
    p_sync.add_argument("--force", action="store_true", help="Overwrite conflicting targets")

    p_quota = sub.add_parser("quota", help="Show GitHub API quota")
    p_quota.add_argument("--account", required=True)
    p_quota.add_argument("--category", default="core", choices=["core", "secrets", "graphql"])
    p_quota.add_argument("--live", action="store_true", help="Refresh from GitHub instead of the cache")

    p_prov = sub.add_parser("provision", help="Provision environments from YAML")
    add_repo_args(p_prov)
    p_prov.add_argument("--file", required=True, type=Path)

    p_val = sub.add_parser("validate", help="Report missing and conflicting secrets")
    add_repo_args(p_val)
    p_val.add_argument("--targets", default=",".join(DEFAULT_TARGETS))
    p_val.add_argument("--check-remote", action="store_true")
    return parser


def load_environment_requests(path: Path) -> list[EnvironmentRequest]:
    """Parse a provisioning file.

    Secret values may be given inline or as `from_env: NAME` to read them
    from the process environment.
    """
    data = yaml.safe_load(path.read_text()) or {}
    requests = []
    for env in data.get("environments", []):
        secrets = []
        for item in env.get("secrets", []):
            if "from_env" in item:
                value = os.environ.get(item["from_env"])
                if value is None:
                    raise ValueError(f"Environment variable {item['from_env']} is not set")
            else:
                value = str(item["value"])
            secrets.append(EnvironmentSecret(name=item["name"], value=value))
        requests.append(
            EnvironmentRequest(
                name=env["name"],
                protection_rules=ProtectionRules.from_dict(env.get("protection_rules")),
                secrets=tuple(secrets),
                linked_resources=LinkedResources.from_dict(env.get("linked_resources")),
            )
        )
    return requests


def _context(args: argparse.Namespace, cfg: Settings, github: GitHubClient) -> SyncContext:
    cloudflare = CloudflareClient(cfg.cloudflare) if cfg.cloudflare.api_token else None
    neon = NeonClient(cfg.neon) if cfg.neon.api_key else None
    return SyncContext(
        project_id=args.project,
        actor_id=args.actor,
        owner=args.owner,
        repo=args.repo,
        github=github,
        cloudflare=cloudflare,
        cloudflare_account_id=args.cloudflare_account,
        cloudflare_worker_name=args.cloudflare_worker,
        cloudflare_pages_project=args.cloudflare_pages_project,
        neon=neon,
        neon_project_id=args.neon_project,
    )


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


async def run(args: argparse.Namespace, cfg: Settings) -> int:
    session_factory = await init_db(cfg)
    store = SqlSyncStore(session_factory)
    audit_sink = SqlAuditSink(session_factory)
    policy = RetryPolicy.from_config(cfg.retry)
    quota = QuotaGovernor(store, reserve_threshold=cfg.quota.reserve_threshold, retry_policy=policy)
    encryption = EncryptionCache(ttl_seconds=cfg.encryption.public_key_ttl_seconds, retry_policy=policy)
    github = GitHubClient(cfg.github)
    ctx: SyncContext | None = None

    try:
        if args.command == "quota":
            return await _quota(args, quota, github)

        ctx = _context(args, cfg, github)
        github.set_rate_limit_observer(quota.observer_for(ctx.account))
        deadline = Deadline(args.deadline_seconds) if args.deadline_seconds else None

        if args.command == "sync":
            service = SecretSyncService(store, audit_sink, quota, encryption, retry_policy=policy)
            summary = await service.sync_all_secrets(
                ctx,
                DotenvSecretSource(args.env_file),
                _split(args.targets),
                force=args.force,
                deadline=deadline,
            )
            for result in summary.results:
                print(f"{result.status:9} {result.secret_name} {result.reason or ''}".rstrip())
            print(
                f"total={summary.total} synced={summary.synced} skipped={summary.skipped} "
                f"failed={summary.failed} conflict={summary.conflict} "
                f"correlation_id={summary.correlation_id}"
            )
            return EXIT_OK if summary.failed == 0 and summary.conflict == 0 else EXIT_FAILED

        if args.command == "provision":
            service = EnvironmentService(
                store,
                audit_sink,
                quota,
                encryption,
                bounds=cfg.protection,
                linked_resource_mode=cfg.linked_resources.mode,
                retry_policy=policy,
            )
            outcome = await service.provision_environments(
                ctx, load_environment_requests(args.file), deadline=deadline
            )
            for result in outcome.created + outcome.updated:
                print(f"{result.status:9} {result.environment_name} id={result.remote_environment_id}")
            for error in outcome.errors:
                print(f"error     {error.environment_name} {error.code}: {error.message}")
            return EXIT_OK if not outcome.errors else EXIT_FAILED

        service = SecretValidationService(store, audit_sink, quota, retry_policy=policy)
        report = await service.validate_secrets(
            ctx,
            target_scopes=_split(args.targets),
            check_remote=args.check_remote,
            deadline=deadline,
        )
        for step in report.remediation_steps:
            print(step)
        return EXIT_OK if report.valid else EXIT_FAILED
    except QuotaExhaustedError as exc:
        logger.warning("Run refused by quota", reset_at=exc.reset_at.isoformat())
        print(str(exc), file=sys.stderr)
        return EXIT_TEMPFAIL
    except EncryptionUnavailableError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_TEMPFAIL
    except (SecretSyncError, ValueError, OSError) as exc:
        logger.error("Run failed", command=args.command, error=str(exc))
        print(str(exc), file=sys.stderr)
        return EXIT_FAILED
    finally:
        await github.aclose()
        if ctx is not None and ctx.cloudflare is not None:
            await ctx.cloudflare.aclose()
        if ctx is not None and ctx.neon is not None:
            await ctx.neon.aclose()
        await close_db()


async def _quota(args: argparse.Namespace, quota: QuotaGovernor, github: GitHubClient) -> int:
    if args.live:
        ctx = SyncContext(project_id="-", actor_id="cli", owner=args.account, repo="-", github=github)
        status = await quota.check_quota(ctx, args.category)
    else:
        status = await quota.get_cached_quota(args.account, args.category)
        if status is None:
            print(f"No cached {args.category} quota for {args.account}; use --live")
            return EXIT_FAILED
    print(
        f"{status.category} {status.remaining}/{status.limit} "
        f"({status.percentage_remaining:.1f}%) resets {status.reset_at.isoformat()}"
    )
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
