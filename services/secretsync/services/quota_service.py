"""
Quota governor for the GitHub REST API.

Mirrors GitHub's per-identity rate-limit counter into api_quotas and refuses
work that would eat into a reserve held back for critical operations. The
counter is only ever replaced with an observed value (from GET /rate_limit or
from x-ratelimit-* response headers); the engine never decrements it itself.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from secretsync.context import SyncContext
from secretsync.db.models import utc_now
from secretsync.errors import QuotaExhaustedError
from secretsync.logging_config import get_logger
from secretsync.services.retry import Deadline, RetryPolicy, call_with_retry
from secretsync.store.protocol import QuotaSnapshot, SyncStore

logger = get_logger(__name__)

# Engine quota category -> GitHub rate_limit resource. Secret endpoints are
# billed against the REST core bucket.
RESOURCE_FOR_CATEGORY = {
    "core": "core",
    "secrets": "core",
    "graphql": "graphql",
}

DEFAULT_RESERVE_THRESHOLD = 100


@dataclass(frozen=True)
class QuotaStatus:
    account: str
    category: str
    remaining: int
    limit: int
    reset_at: datetime

    @property
    def percentage_remaining(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit * 100

    def minutes_until_reset(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        return max(0, math.ceil((self.reset_at - now).total_seconds() / 60))

    @classmethod
    def from_snapshot(cls, snapshot: QuotaSnapshot) -> "QuotaStatus":
        return cls(
            account=snapshot.account,
            category=snapshot.category,
            remaining=snapshot.remaining,
            limit=snapshot.limit,
            reset_at=snapshot.reset_at,
        )


def _resource_for(category: str) -> str:
    try:
        return RESOURCE_FOR_CATEGORY[category]
    except KeyError:
        raise ValueError(f"Unknown quota category: {category}") from None


def parse_rate_limit_headers(headers: dict[str, str]) -> tuple[str, int, int, datetime] | None:
    """Extract (resource, remaining, limit, reset_at) from x-ratelimit-* headers.

    Returns None when any of remaining/limit/reset is missing or malformed.
    """
    try:
        remaining = int(headers["x-ratelimit-remaining"])
        limit = int(headers["x-ratelimit-limit"])
        reset = int(headers["x-ratelimit-reset"])
    except (KeyError, ValueError):
        return None
    resource = headers.get("x-ratelimit-resource", "core")
    return resource, remaining, limit, datetime.fromtimestamp(reset, UTC)


class QuotaGovernor:
    """Admission control against the persisted quota mirror."""

    def __init__(
        self,
        store: SyncStore,
        *,
        reserve_threshold: int = DEFAULT_RESERVE_THRESHOLD,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.reserve_threshold = reserve_threshold
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    async def check_quota(
        self,
        ctx: SyncContext,
        category: str = "core",
        *,
        deadline: Deadline | None = None,
    ) -> QuotaStatus:
        """Refresh from GET /rate_limit (free of charge) and persist the result."""
        resource = _resource_for(category)
        resources = await call_with_retry(
            ctx.github.get_rate_limit,
            "rate limit",
            policy=self._retry_policy,
            deadline=deadline,
        )
        observed = resources[resource]
        status = QuotaStatus(
            account=ctx.account,
            category=category,
            remaining=int(observed["remaining"]),
            limit=int(observed["limit"]),
            reset_at=datetime.fromtimestamp(int(observed["reset"]), UTC),
        )
        await self._persist(status)
        return status

    async def block_if_insufficient(
        self,
        ctx: SyncContext,
        category: str = "core",
        required: int = 1,
        *,
        deadline: Deadline | None = None,
    ) -> QuotaStatus:
        """Refresh the quota and raise QuotaExhaustedError if the reserve would be breached."""
        status = await self.check_quota(ctx, category, deadline=deadline)
        if status.remaining < self.reserve_threshold + required:
            minutes = status.minutes_until_reset(self._clock())
            logger.warning(
                "Quota admission refused",
                account=status.account,
                category=category,
                remaining=status.remaining,
                limit=status.limit,
                required=required,
                reserve=self.reserve_threshold,
                minutes_until_reset=minutes,
            )
            raise QuotaExhaustedError(
                account=status.account,
                category=category,
                remaining=status.remaining,
                limit=status.limit,
                reset_at=status.reset_at,
                minutes_until_reset=minutes,
            )
        return status

    async def get_cached_quota(self, account: str, category: str = "core") -> QuotaStatus | None:
        """Last persisted snapshot. Never calls GitHub."""
        _resource_for(category)
        snapshot = await self._store.get_quota(account, category)
        return QuotaStatus.from_snapshot(snapshot) if snapshot is not None else None

    async def record_observed(self, account: str, headers: dict[str, str]) -> None:
        """Persist counters carried on any GitHub response.

        Every engine category billed against the reported resource is updated.
        Responses without usable headers are ignored.
        """
        parsed = parse_rate_limit_headers(headers)
        if parsed is None:
            return
        resource, remaining, limit, reset_at = parsed
        for category, billed_to in RESOURCE_FOR_CATEGORY.items():
            if billed_to != resource:
                continue
            await self._persist(
                QuotaStatus(
                    account=account,
                    category=category,
                    remaining=remaining,
                    limit=limit,
                    reset_at=reset_at,
                )
            )

    def observer_for(self, account: str):
        """Adapter for GitHubClient's rate_limit_observer hook."""

        async def _observe(headers: dict[str, str]) -> None:
            await self.record_observed(account, headers)

        return _observe

    async def _persist(self, status: QuotaStatus) -> None:
        await self._store.upsert_quota(
            QuotaSnapshot(
                account=status.account,
                category=status.category,
                remaining=status.remaining,
                limit=status.limit,
                reset_at=status.reset_at,
                last_checked_at=self._clock(),
            )
        )
        logger.debug(
            "Quota snapshot stored",
            account=status.account,
            category=status.category,
            remaining=status.remaining,
            limit=status.limit,
        )
