"""
Exception taxonomy for the secretsync engine.

Conflicts and exclusions are ordinary results and never raise. Everything
here is raised to the caller, who decides whether to retry later.
"""

from datetime import datetime


class SecretSyncError(Exception):
    """Base exception for engine operations."""


# --- Remote API ---


class RemoteError(SecretSyncError):
    """A remote API call failed.

    status_code is None for transport-level failures (reset, timeout).
    retry_after is the server's explicit back-off instruction in seconds.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        self.headers = headers or {}
        super().__init__(message)


class RemoteTransientError(RemoteError):
    """Network reset, timeout, 5xx or 429. Retried automatically, then surfaced."""


class RemoteRejectedError(RemoteError):
    """4xx other than 429. Surfaced immediately, never retried."""


class DeadlineExceededError(SecretSyncError):
    """The caller-supplied deadline passed at a suspension point."""

    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(f"Deadline exceeded before {label}")


# --- Quota ---


class QuotaExhaustedError(SecretSyncError):
    """Raised before a remote call when the quota reserve would be breached."""

    def __init__(
        self,
        *,
        account: str,
        category: str,
        remaining: int,
        limit: int,
        reset_at: datetime,
        minutes_until_reset: int,
    ) -> None:
        self.account = account
        self.category = category
        self.remaining = remaining
        self.limit = limit
        self.reset_at = reset_at
        self.minutes_until_reset = minutes_until_reset
        super().__init__(
            f"{category} API quota exhausted for {account}. "
            f"Remaining: {remaining}/{limit}. "
            f"Resets in {minutes_until_reset} minutes at {reset_at.isoformat()}."
        )


# --- Secrets ---


class ValueConflictError(SecretSyncError):
    """A target scope's recorded fingerprint diverges from the source value."""

    def __init__(self, secret_name: str, source_scope: str, target_scopes: list[str]) -> None:
        self.secret_name = secret_name
        self.source_scope = source_scope
        self.target_scopes = target_scopes
        super().__init__(
            f"Secret {secret_name} in {source_scope} diverges from "
            f"{', '.join(target_scopes)}; re-run with force=True to overwrite"
        )


class EncryptionUnavailableError(SecretSyncError):
    """The destination public key could not be fetched. Not cached, safe to retry."""

    def __init__(self, destination: str, reason: str) -> None:
        self.destination = destination
        super().__init__(f"Public key unavailable for {destination}: {reason}")


# --- Environments ---


class ProtectionRuleValidationError(SecretSyncError, ValueError):
    """Protection rules are outside the provider's supported bounds.

    code is the stable identifier reported to API callers.
    """

    def __init__(self, message: str, code: str = "GITHUB_ENV_PROTECTION_RULE_CONFLICT") -> None:
        self.code = code
        super().__init__(message)


class LinkedResourceMissingError(SecretSyncError):
    """A resource referenced by an environment does not exist."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Linked resource validation failed: {', '.join(missing)}")
