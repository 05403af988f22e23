"""
Secret value sources for bulk sync.

GitHub never returns secret values, so the source scope's values come from
the caller: an in-memory mapping (tests, API callers) or a dotenv file
(scheduled CLI runs).
"""

from pathlib import Path
from typing import Protocol, runtime_checkable

from dotenv import dotenv_values

from secretsync.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class SecretSource(Protocol):
    """Enumerates the secrets currently present in the source scope."""

    async def list_secrets(self) -> dict[str, str]:
        """Return name -> plaintext value."""
        ...


class StaticSecretSource:
    def __init__(self, secrets: dict[str, str]) -> None:
        self._secrets = dict(secrets)

    async def list_secrets(self) -> dict[str, str]:
        return dict(self._secrets)


class DotenvSecretSource:
    """Reads secrets from a dotenv file each time it is enumerated."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def list_secrets(self) -> dict[str, str]:
        if not self._path.is_file():
            raise FileNotFoundError(f"Dotenv file not found: {self._path}")
        # No interpolation: secret values may contain literal "${...}".
        parsed = dotenv_values(self._path, interpolate=False)
        secrets = {}
        for key, value in parsed.items():
            if value is None:
                logger.warning("Ignoring dotenv key without a value", path=str(self._path), key=key)
                continue
            secrets[key] = value
        logger.info("Loaded secrets from dotenv", path=str(self._path), count=len(secrets))
        return secrets
