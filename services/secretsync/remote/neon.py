"""Neon API client. Only branch lookups are needed, to verify linked resources."""

import httpx

from secretsync.config import NeonConfig
from secretsync.errors import RemoteRejectedError
from secretsync.remote.http import raise_for_status


class NeonClient:
    def __init__(self, config: NeonConfig, *, http: httpx.AsyncClient | None = None) -> None:
        if not config.api_key:
            raise ValueError("Neon API key not configured")
        self._config = config
        self._http = http or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_http = http is None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def branch_exists(self, project_id: str, branch_id: str) -> bool:
        """True if the branch exists in the Neon project, False on 404."""
        resp = await self._http.get(
            f"{self._config.api_url.rstrip('/')}/projects/{project_id}/branches/{branch_id}",
            headers={
                "Authorization": f"Bearer {self._config.api_key}",
                "Accept": "application/json",
            },
        )
        try:
            raise_for_status(resp, "Neon", f"lookup branch {branch_id}")
        except RemoteRejectedError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True
