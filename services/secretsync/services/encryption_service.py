"""
Per-destination sealed-box encryption for GitHub secrets.

GitHub secret stores each publish a Curve25519 public key. Values are sealed
to that key with a libsodium sealed box before they leave the process; the
sender keeps nothing that could open the ciphertext again.

Public keys are cached in process memory for a short TTL, keyed by the
destination's identity. Failed fetches are never cached. Two callers racing
on a miss for the same destination both fetch, and whichever stores last
wins; the keys are identical so the race is harmless.
"""

import base64
import time
from collections.abc import Callable
from dataclasses import dataclass

from nacl import encoding, exceptions, public

from secretsync.errors import DeadlineExceededError, EncryptionUnavailableError, RemoteError
from secretsync.logging_config import get_logger
from secretsync.remote.github import GitHubClient, PublicKey, SecretDestination
from secretsync.services.retry import TRANSIENT_EXCEPTIONS, Deadline, RetryPolicy, call_with_retry

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300


@dataclass(frozen=True)
class SealedSecret:
    """Ciphertext ready for PUT .../secrets/{name}."""

    encrypted_value: str
    key_id: str


@dataclass(frozen=True)
class _CachedKey:
    key: PublicKey
    expires_at: float


def seal(plaintext: str, public_key_b64: str) -> str:
    """Seal plaintext to a base64 Curve25519 public key, returning base64 ciphertext."""
    recipient = public.PublicKey(public_key_b64.encode("utf-8"), encoding.Base64Encoder)
    sealed = public.SealedBox(recipient).encrypt(plaintext.encode("utf-8"))
    return base64.b64encode(sealed).decode("utf-8")


class EncryptionCache:
    """Public key cache plus sealing.

    One instance is shared by every sync and provisioning call in the process.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._keys: dict[str, _CachedKey] = {}

    def is_cached(self, destination: SecretDestination) -> bool:
        entry = self._keys.get(destination.identity)
        return entry is not None and entry.expires_at > self._clock()

    def invalidate(self, destination: SecretDestination) -> None:
        """Force the next encrypt() for this destination to re-fetch its key."""
        if self._keys.pop(destination.identity, None) is not None:
            logger.info("Public key invalidated", destination=destination.identity)

    def clear(self) -> None:
        self._keys.clear()

    async def get_public_key(
        self,
        github: GitHubClient,
        destination: SecretDestination,
        *,
        deadline: Deadline | None = None,
    ) -> PublicKey:
        entry = self._keys.get(destination.identity)
        if entry is not None and entry.expires_at > self._clock():
            return entry.key

        try:
            key = await call_with_retry(
                lambda: github.get_public_key(destination),
                f"public key {destination.identity}",
                policy=self._retry_policy,
                deadline=deadline,
            )
        except DeadlineExceededError:
            raise
        except (RemoteError, *TRANSIENT_EXCEPTIONS) as exc:
            logger.warning(
                "Public key fetch failed",
                destination=destination.identity,
                error=str(exc),
            )
            raise EncryptionUnavailableError(destination.identity, str(exc)) from exc

        self._keys[destination.identity] = _CachedKey(key=key, expires_at=self._clock() + self._ttl)
        logger.debug("Public key cached", destination=destination.identity, key_id=key.key_id)
        return key

    async def encrypt(
        self,
        github: GitHubClient,
        destination: SecretDestination,
        plaintext: str,
        *,
        deadline: Deadline | None = None,
    ) -> SealedSecret:
        key = await self.get_public_key(github, destination, deadline=deadline)
        try:
            encrypted = seal(plaintext, key.key)
        except (exceptions.CryptoError, ValueError, TypeError) as exc:
            # A malformed key is dropped so the next attempt fetches a fresh one
            self.invalidate(destination)
            raise EncryptionUnavailableError(destination.identity, "invalid public key") from exc
        return SealedSecret(encrypted_value=encrypted, key_id=key.key_id)
