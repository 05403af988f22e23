"""Audit trail for engine operations.

Every terminal outcome (success, failure, partial, skipped, conflict) is
written to an AuditSink before the operation returns or raises. Records
name secrets and scopes, never values.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

# Operations
OP_DELETE = "delete"
OP_SYNC = "sync"
OP_SYNC_ALL = "sync_all"
OP_VALIDATE = "validate"
OP_PROVISION = "provision"

# Statuses
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_PARTIAL = "partial"
STATUS_SKIPPED = "skipped"
STATUS_CONFLICT = "conflict"


@dataclass(frozen=True)
class AuditRecord:
    """One structured audit entry."""

    project_id: str
    actor_id: str
    operation: str
    affected_scopes: list[str]
    status: str
    success_count: int
    failure_count: int
    correlation_id: uuid.UUID
    duration_ms: int
    secret_name: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AuditSink(Protocol):
    """Durable append-only destination for audit records."""

    async def append(self, record: AuditRecord) -> None:
        """Persist one record."""
        ...


def new_correlation_id() -> uuid.UUID:
    """Generate a correlation ID linking the audit entries of one run."""
    return uuid.uuid4()


class Stopwatch:
    """Monotonic elapsed-time helper for duration_ms fields."""

    def __init__(self) -> None:
        self._start = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)


def outcome_status(success_count: int, failure_count: int) -> str:
    """Map per-scope counts to an audit status."""
    if failure_count == 0:
        return STATUS_SUCCESS
    if success_count == 0:
        return STATUS_FAILURE
    return STATUS_PARTIAL
