"""
Persistence protocol and record types for secretsync.

Defines the SyncStore Protocol the engine persists through, along with the
plain records that cross it. Every write is an upsert on a natural key; no
other query shapes are needed by the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

# --- Record Types ---


@dataclass
class SecretMappingRecord:
    """Sync state for one (project, secret name). Never holds a value."""

    project_id: str
    secret_name: str
    value_hash: str | None = None
    source_scope: str = "actions"
    target_scopes: list[str] = field(default_factory=list)
    scope_hashes: dict[str, str] = field(default_factory=dict)
    is_excluded: bool = False
    sync_status: str = "pending"
    error_message: str | None = None
    last_synced_at: datetime | None = None


@dataclass(frozen=True)
class ExclusionRule:
    """A stored exclusion regex."""

    pattern: str
    is_global: bool
    project_id: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class QuotaSnapshot:
    """Remote rate-limit counter as last observed."""

    account: str
    category: str
    remaining: int
    limit: int
    reset_at: datetime
    last_checked_at: datetime | None = None


@dataclass
class EnvironmentRecord:
    """Local view of a provisioned deployment environment."""

    project_id: str
    environment_name: str
    remote_environment_id: int
    protection_rules: dict[str, Any] = field(default_factory=dict)
    secrets: list[dict[str, Any]] = field(default_factory=list)
    linked_resources: dict[str, Any] = field(default_factory=dict)
    status: str = "active"


# --- Protocol ---


@runtime_checkable
class SyncStore(Protocol):
    """Protocol defining the persistence interface.

    All methods are async. Implementations must satisfy this interface
    structurally (duck typing); no inheritance required.
    """

    async def get_secret_mapping(
        self, project_id: str, secret_name: str
    ) -> SecretMappingRecord | None:
        """Return the mapping for (project, secret) or None."""
        ...

    async def list_secret_mappings(
        self, project_id: str, secret_names: list[str] | None = None
    ) -> list[SecretMappingRecord]:
        """Return mappings for a project, optionally limited to some names."""
        ...

    async def upsert_secret_mapping(self, record: SecretMappingRecord) -> None:
        """Insert or update the mapping keyed by (project, secret)."""
        ...

    async def list_exclusion_patterns(self, project_id: str) -> list[ExclusionRule]:
        """Return global patterns followed by patterns scoped to project_id."""
        ...

    async def get_quota(self, account: str, category: str) -> QuotaSnapshot | None:
        """Return the last persisted quota snapshot, if any."""
        ...

    async def upsert_quota(self, snapshot: QuotaSnapshot) -> None:
        """Replace the quota snapshot keyed by (account, category)."""
        ...

    async def get_environment_config(
        self, project_id: str, environment_name: str
    ) -> EnvironmentRecord | None:
        """Return the environment row for (project, environment) or None."""
        ...

    async def upsert_environment_config(self, record: EnvironmentRecord) -> bool:
        """Insert or update the environment row.

        Returns:
            True if a new row was inserted, False if an existing one was updated.
        """
        ...
