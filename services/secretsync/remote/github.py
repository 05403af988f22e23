"""GitHub REST client for secret stores, environments and rate limits.

Supports token auth and GitHub App auth. App installation tokens are cached
per client for 50 minutes (they last 60). Every response's rate-limit headers
are handed to an optional observer so the quota governor can mirror the
remote counter without spending a request.

Calls here are single attempts; retry is the caller's job.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import jwt

from secretsync.config import GitHubConfig
from secretsync.errors import RemoteRejectedError
from secretsync.logging_config import get_logger
from secretsync.remote.http import raise_for_status

logger = get_logger(__name__)

SCOPE_ACTIONS = "actions"
SCOPE_CODESPACES = "codespaces"
SCOPE_DEPENDABOT = "dependabot"
SCOPE_ENVIRONMENT = "environment"

GITHUB_SCOPES = frozenset({SCOPE_ACTIONS, SCOPE_CODESPACES, SCOPE_DEPENDABOT, SCOPE_ENVIRONMENT})

RateLimitObserver = Callable[[dict[str, str]], Awaitable[None]]


@dataclass(frozen=True)
class SecretDestination:
    """A GitHub secret store: one scope of one repository (or environment)."""

    scope: str
    owner: str
    repo: str
    environment: str | None = None

    def __post_init__(self) -> None:
        if self.scope not in GITHUB_SCOPES:
            raise ValueError(f"Unknown GitHub secret scope: {self.scope}")
        if (self.scope == SCOPE_ENVIRONMENT) != bool(self.environment):
            raise ValueError("environment is required for, and only for, the environment scope")

    @property
    def identity(self) -> str:
        """Stable cache key. Each store has its own key pair."""
        base = f"{self.scope}:{self.owner}/{self.repo}"
        return f"{base}:{self.environment}" if self.environment else base

    @property
    def secrets_path(self) -> str:
        if self.scope == SCOPE_ENVIRONMENT:
            return f"/repos/{self.owner}/{self.repo}/environments/{self.environment}/secrets"
        return f"/repos/{self.owner}/{self.repo}/{self.scope}/secrets"


@dataclass(frozen=True)
class PublicKey:
    """Destination public key as returned by GitHub."""

    key_id: str
    key: str


def generate_app_jwt(app_id: int, private_key: str) -> str:
    """Generate a short-lived JWT for GitHub App authentication.

    The JWT is signed with RS256 using the app's private key and has a
    10-minute lifetime (GitHub maximum).
    """
    now = int(time.time())
    payload = {
        "iat": now - 60,  # 60s clock skew allowance
        "exp": now + (10 * 60),
        "iss": str(app_id),
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


class GitHubClient:
    """Thin async wrapper over the GitHub REST endpoints the engine needs."""

    def __init__(
        self,
        config: GitHubConfig,
        *,
        http: httpx.AsyncClient | None = None,
        rate_limit_observer: RateLimitObserver | None = None,
    ) -> None:
        self._config = config
        self._http = http or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_http = http is None
        self._observer = rate_limit_observer
        self._installation_token: tuple[str, float] | None = None

    @property
    def api_url(self) -> str:
        return self._config.api_url.rstrip("/")

    def set_rate_limit_observer(self, observer: RateLimitObserver | None) -> None:
        self._observer = observer

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # --- Auth ---

    async def _token(self) -> str:
        if self._config.token:
            return self._config.token
        if not (self._config.app_id and self._config.app_private_key and self._config.installation_id):
            raise ValueError("GitHub credentials not configured (token or app settings required)")

        cached = self._installation_token
        if cached and time.time() < cached[1]:
            return cached[0]

        app_jwt = generate_app_jwt(self._config.app_id, self._config.app_private_key)
        resp = await self._http.post(
            f"{self.api_url}/app/installations/{self._config.installation_id}/access_tokens",
            headers=self._headers(f"Bearer {app_jwt}"),
        )
        raise_for_status(resp, "GitHub", "installation token")
        token = resp.json()["token"]
        self._installation_token = (token, time.time() + 50 * 60)
        logger.debug(
            "GitHub installation token obtained",
            installation_id=self._config.installation_id,
        )
        return token

    def _headers(self, authorization: str) -> dict[str, str]:
        return {
            "Authorization": authorization,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self._config.api_version,
        }

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        token = await self._token()
        resp = await self._http.request(
            method,
            f"{self.api_url}{path}",
            headers=self._headers(f"Bearer {token}"),
            json=json,
            params=params,
        )
        if self._observer is not None and "x-ratelimit-remaining" in resp.headers:
            await self._observer({k.lower(): v for k, v in resp.headers.items()})
        raise_for_status(resp, "GitHub", action)
        return resp

    # --- Rate limits ---

    async def get_rate_limit(self) -> dict[str, Any]:
        """Return the `resources` map of GET /rate_limit (does not count against quota)."""
        resp = await self._request("GET", "/rate_limit", "rate limit")
        return resp.json()["resources"]

    # --- Secrets ---

    async def get_public_key(self, destination: SecretDestination) -> PublicKey:
        resp = await self._request(
            "GET", f"{destination.secrets_path}/public-key", f"public key {destination.identity}"
        )
        data = resp.json()
        return PublicKey(key_id=str(data["key_id"]), key=data["key"])

    async def put_secret(
        self,
        destination: SecretDestination,
        name: str,
        encrypted_value: str,
        key_id: str,
    ) -> None:
        """Create or update a secret. Idempotent on (destination, name)."""
        await self._request(
            "PUT",
            f"{destination.secrets_path}/{name}",
            f"write secret {name} to {destination.identity}",
            json={"encrypted_value": encrypted_value, "key_id": key_id},
        )

    async def delete_secret(self, destination: SecretDestination, name: str) -> bool:
        """Delete a secret. Returns False if it did not exist."""
        try:
            await self._request(
                "DELETE",
                f"{destination.secrets_path}/{name}",
                f"delete secret {name} from {destination.identity}",
            )
        except RemoteRejectedError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    async def list_secrets(self, destination: SecretDestination) -> list[dict[str, Any]]:
        """List secret metadata (names and timestamps; values are never returned)."""
        secrets: list[dict[str, Any]] = []
        page = 1
        while True:
            resp = await self._request(
                "GET",
                destination.secrets_path,
                f"list secrets {destination.identity}",
                params={"per_page": 100, "page": page},
            )
            data = resp.json()
            batch = data.get("secrets", [])
            secrets.extend(batch)
            if len(secrets) >= data.get("total_count", 0) or not batch:
                return secrets
            page += 1

    # --- Environments ---

    async def create_or_update_environment(
        self, owner: str, repo: str, name: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """PUT an environment. GitHub treats this as create-or-update on the name."""
        resp = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/environments/{name}",
            f"create environment {name}",
            json=payload or {},
        )
        return resp.json()
