"""Resilient call executor for remote API operations.

Wraps a zero-argument coroutine factory with bounded retry, exponential
backoff and jitter. Classification:

- 4xx other than 429: RemoteRejectedError, raised immediately.
- 429, 5xx, connection reset, timeout: retried, then RemoteTransientError.

A 429 carrying retry-after N is slept for exactly N seconds, no jitter and
no cap. A caller-supplied Deadline is checked before each attempt and before
each backoff sleep.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from secretsync.config import RetryConfig
from secretsync.errors import (
    DeadlineExceededError,
    RemoteError,
    RemoteRejectedError,
    RemoteTransientError,
)
from secretsync.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_EXCEPTIONS = (httpx.TransportError, TimeoutError, ConnectionError, OSError)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters, all in milliseconds."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 32000
    jitter_ms: int = 1000

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=cfg.max_retries,
            base_delay_ms=cfg.base_delay_ms,
            max_delay_ms=cfg.max_delay_ms,
            jitter_ms=cfg.jitter_ms,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class Deadline:
    """Absolute monotonic deadline supplied by the caller."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, label: str) -> None:
        """Raise DeadlineExceededError if the deadline has passed."""
        if self.expired:
            raise DeadlineExceededError(label)


def is_retryable(exc: BaseException) -> bool:
    """Decide whether an error from a remote call is worth another attempt."""
    if isinstance(exc, RemoteRejectedError):
        return False
    if isinstance(exc, RemoteError):
        status = exc.status_code
        if status is None or status == 429 or status >= 500:
            return True
        return not (400 <= status < 500)
    return isinstance(exc, TRANSIENT_EXCEPTIONS)


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    exc: BaseException | None = None,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay in milliseconds before the attempt following `attempt` (1-based)."""
    if isinstance(exc, RemoteError) and exc.status_code == 429 and exc.retry_after is not None:
        return float(exc.retry_after * 1000)

    exponential = policy.base_delay_ms * (2 ** (attempt - 1))
    capped = min(exponential, policy.max_delay_ms)
    return capped + rand(0, policy.jitter_ms)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    *,
    policy: RetryPolicy | None = None,
    deadline: Deadline | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` with retries. Returns its result or raises the final error."""
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        if deadline is not None:
            deadline.check(label)
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001 - classified below, re-raised when final
            if not is_retryable(exc):
                if isinstance(exc, RemoteError) and not isinstance(exc, RemoteRejectedError):
                    raise RemoteRejectedError(
                        str(exc), status_code=exc.status_code, headers=exc.headers
                    ) from exc
                raise

            if attempt >= policy.max_attempts:
                if isinstance(exc, RemoteTransientError):
                    raise
                status = exc.status_code if isinstance(exc, RemoteError) else None
                raise RemoteTransientError(
                    f"{label} failed after {attempt} attempts: {exc}", status_code=status
                ) from exc

            delay_ms = compute_delay(attempt, policy, exc)
            logger.warning(
                "Retrying remote operation after error",
                label=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_ms=round(delay_ms),
                error=str(exc),
                status=getattr(exc, "status_code", None),
            )
            if deadline is not None:
                deadline.check(label)
            await sleep(delay_ms / 1000.0)
            attempt += 1
