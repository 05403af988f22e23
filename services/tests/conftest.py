"""
Top-level test configuration for secretsync.

Provides in-memory stand-ins for the SyncStore, the audit sink and the remote
API clients so service tests run without PostgreSQL or network access.
"""

import base64
import copy
import os
import time
from datetime import UTC, datetime

import pytest
from nacl import encoding, public

# Ensure test-friendly defaults
os.environ.setdefault("SECRETSYNC_JSON_LOGS", "false")
os.environ.setdefault("SECRETSYNC_LOG_LEVEL", "DEBUG")

from secretsync.context import SyncContext  # noqa: E402
from secretsync.errors import RemoteRejectedError  # noqa: E402
from secretsync.remote.github import PublicKey, SecretDestination  # noqa: E402
from secretsync.services.encryption_service import EncryptionCache  # noqa: E402
from secretsync.services.environment_service import EnvironmentService  # noqa: E402
from secretsync.services.quota_service import QuotaGovernor  # noqa: E402
from secretsync.services.retry import RetryPolicy  # noqa: E402
from secretsync.services.secret_sync_service import SecretSyncService  # noqa: E402
from secretsync.store.protocol import (  # noqa: E402
    EnvironmentRecord,
    ExclusionRule,
    QuotaSnapshot,
    SecretMappingRecord,
)

# Zero backoff so retry paths run instantly
FAST_RETRY = RetryPolicy(max_retries=3, base_delay_ms=0, max_delay_ms=0, jitter_ms=0)

SEEDED_GLOBAL_PATTERNS = [
    "^GITHUB_TOKEN$",
    "^ACTIONS_.*",
    "^RUNNER_.*",
    "^CI$",
    "^GITHUB_WORKSPACE$",
    "^GITHUB_SHA$",
    "^GITHUB_REF$",
]


class InMemorySyncStore:
    """SyncStore keeping copies of records in dicts, like a database would."""

    def __init__(self, exclusions: list[ExclusionRule] | None = None) -> None:
        self.mappings: dict[tuple[str, str], SecretMappingRecord] = {}
        self.exclusions: list[ExclusionRule] = list(exclusions or [])
        self.quotas: dict[tuple[str, str], QuotaSnapshot] = {}
        self.environments: dict[tuple[str, str], EnvironmentRecord] = {}
        self.mapping_writes = 0

    async def get_secret_mapping(self, project_id, secret_name):
        record = self.mappings.get((project_id, secret_name))
        return copy.deepcopy(record)

    async def list_secret_mappings(self, project_id, secret_names=None):
        return [
            copy.deepcopy(r)
            for (pid, name), r in sorted(self.mappings.items())
            if pid == project_id and (not secret_names or name in secret_names)
        ]

    async def upsert_secret_mapping(self, record):
        self.mapping_writes += 1
        self.mappings[(record.project_id, record.secret_name)] = copy.deepcopy(record)

    async def list_exclusion_patterns(self, project_id):
        rules = [r for r in self.exclusions if r.is_global or r.project_id == project_id]
        return sorted(rules, key=lambda r: not r.is_global)

    async def get_quota(self, account, category):
        return self.quotas.get((account, category))

    async def upsert_quota(self, snapshot):
        self.quotas[(snapshot.account, snapshot.category)] = snapshot

    async def get_environment_config(self, project_id, environment_name):
        return copy.deepcopy(self.environments.get((project_id, environment_name)))

    async def upsert_environment_config(self, record):
        key = (record.project_id, record.environment_name)
        created = key not in self.environments
        self.environments[key] = copy.deepcopy(record)
        return created


class RecordingAuditSink:
    def __init__(self) -> None:
        self.records = []

    async def append(self, record) -> None:
        self.records.append(record)

    def by_operation(self, operation):
        return [r for r in self.records if r.operation == operation]


def destination_key(destination: SecretDestination) -> str:
    if destination.environment:
        return f"environment:{destination.environment}"
    return destination.scope


class FakeGitHub:
    """In-memory GitHub with real sealed-box key pairs per destination.

    put_failures / key_failures map a target key ("codespaces",
    "environment:staging", ...) to exceptions raised by successive calls.
    """

    def __init__(self, remaining: int = 5000, limit: int = 5000) -> None:
        self.remaining = remaining
        self.limit = limit
        self.reset = int(time.time()) + 1800
        self.private_keys: dict[str, public.PrivateKey] = {}
        self.key_ids: dict[str, str] = {}
        self.secrets: dict[str, dict[str, tuple[str, str]]] = {}
        self.environments: dict[str, dict] = {}
        self.put_failures: dict[str, list[Exception]] = {}
        self.key_failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self.observer = None
        self.closed = False

    def set_rate_limit_observer(self, observer) -> None:
        self.observer = observer

    async def aclose(self) -> None:
        self.closed = True

    async def get_rate_limit(self):
        self.calls.append(("rate_limit",))
        bucket = {"remaining": self.remaining, "limit": self.limit, "reset": self.reset}
        return {"core": dict(bucket), "graphql": dict(bucket)}

    async def get_public_key(self, destination):
        key = destination_key(destination)
        self.calls.append(("public_key", key))
        failures = self.key_failures.get(key)
        if failures:
            raise failures.pop(0)
        if key not in self.private_keys:
            self.private_keys[key] = public.PrivateKey.generate()
            self.key_ids[key] = f"kid-{len(self.key_ids) + 1}"
        encoded = self.private_keys[key].public_key.encode(encoding.Base64Encoder).decode()
        return PublicKey(key_id=self.key_ids[key], key=encoded)

    async def put_secret(self, destination, name, encrypted_value, key_id):
        key = destination_key(destination)
        self.calls.append(("put_secret", key, name))
        failures = self.put_failures.get(key)
        if failures:
            raise failures.pop(0)
        self.secrets.setdefault(key, {})[name] = (encrypted_value, key_id)

    async def delete_secret(self, destination, name):
        key = destination_key(destination)
        self.calls.append(("delete_secret", key, name))
        return self.secrets.get(key, {}).pop(name, None) is not None

    async def list_secrets(self, destination):
        key = destination_key(destination)
        self.calls.append(("list_secrets", key))
        return [{"name": name} for name in sorted(self.secrets.get(key, {}))]

    async def create_or_update_environment(self, owner, repo, name, payload=None):
        self.calls.append(("environment", name))
        failures = self.put_failures.get(f"create:{name}")
        if failures:
            raise failures.pop(0)
        env = self.environments.setdefault(name, {"id": 1000 + len(self.environments), "name": name})
        env["payload"] = payload
        return {"id": env["id"], "name": name}

    def decrypt(self, key: str, name: str) -> str:
        encrypted, _ = self.secrets[key][name]
        box = public.SealedBox(self.private_keys[key])
        return box.decrypt(base64.b64decode(encrypted)).decode()

    def writes(self, key: str | None = None) -> list[tuple]:
        return [c for c in self.calls if c[0] == "put_secret" and (key is None or c[1] == key)]


class FakeCloudflare:
    def __init__(self, workers=("api-worker",), pages=("web",)) -> None:
        self.workers = set(workers)
        self.pages = set(pages)
        self.worker_secrets: dict[str, str] = {}
        self.pages_secrets: dict[str, str] = {}
        self.fail_writes: list[Exception] = []

    async def put_worker_secret(self, account_id, script_name, name, value):
        if self.fail_writes:
            raise self.fail_writes.pop(0)
        self.worker_secrets[name] = value

    async def list_worker_secrets(self, account_id, script_name):
        return [{"name": name, "type": "secret_text"} for name in sorted(self.worker_secrets)]

    async def set_pages_secret(self, account_id, project_name, name, value, environment="production"):
        self.pages_secrets[name] = value

    async def delete_worker_secret(self, account_id, script_name, name):
        return self.worker_secrets.pop(name, None) is not None

    async def delete_pages_secret(self, account_id, project_name, name, environment="production"):
        self.pages_secrets.pop(name, None)

    async def worker_exists(self, account_id, script_name):
        return script_name in self.workers

    async def pages_project_exists(self, account_id, project_name):
        return project_name in self.pages


class FakeNeon:
    def __init__(self, branches=("br-main-123",)) -> None:
        self.branches = set(branches)
        self.lookups = 0

    async def branch_exists(self, project_id, branch_id):
        self.lookups += 1
        return branch_id in self.branches


def rejected(status: int = 422, message: str = "Unprocessable") -> RemoteRejectedError:
    return RemoteRejectedError(message, status_code=status)


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore(
        exclusions=[ExclusionRule(pattern=p, is_global=True) for p in SEEDED_GLOBAL_PATTERNS]
    )


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def cloudflare() -> FakeCloudflare:
    return FakeCloudflare()


@pytest.fixture
def neon() -> FakeNeon:
    return FakeNeon()


@pytest.fixture
def ctx(github, cloudflare, neon) -> SyncContext:
    return SyncContext(
        project_id="proj-1",
        actor_id="user-1",
        owner="acme",
        repo="widgets",
        github=github,
        cloudflare=cloudflare,
        cloudflare_account_id="cf-acct",
        cloudflare_worker_name="api-worker",
        cloudflare_pages_project="web",
        neon=neon,
        neon_project_id="neon-proj",
    )


@pytest.fixture
def quota(store) -> QuotaGovernor:
    return QuotaGovernor(store, retry_policy=FAST_RETRY)


@pytest.fixture
def encryption() -> EncryptionCache:
    return EncryptionCache(retry_policy=FAST_RETRY)


@pytest.fixture
def sync_service(store, audit_sink, quota, encryption) -> SecretSyncService:
    return SecretSyncService(store, audit_sink, quota, encryption, retry_policy=FAST_RETRY)


@pytest.fixture
def env_service(store, audit_sink, quota, encryption) -> EnvironmentService:
    return EnvironmentService(store, audit_sink, quota, encryption, retry_policy=FAST_RETRY)


def utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, UTC)
