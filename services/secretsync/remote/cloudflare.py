"""Cloudflare API client for Worker and Pages secrets.

Cloudflare accepts secret values in plaintext over TLS, so there is no key
fetch or sealing step for these targets. Writes are idempotent: a PUT with an
existing name overwrites it.
"""

from typing import Any

import httpx

from secretsync.config import CloudflareConfig
from secretsync.errors import RemoteRejectedError
from secretsync.logging_config import get_logger
from secretsync.remote.http import raise_for_status

logger = get_logger(__name__)

PAGES_ENVIRONMENTS = ("production", "preview")


class CloudflareClient:
    """Async Cloudflare v4 API client scoped to one API token."""

    def __init__(self, config: CloudflareConfig, *, http: httpx.AsyncClient | None = None) -> None:
        if not config.api_token:
            raise ValueError("Cloudflare API token not configured")
        self._config = config
        self._http = http or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_http = http is None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self, method: str, path: str, action: str, *, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        resp = await self._http.request(
            method,
            f"{self._config.api_url.rstrip('/')}{path}",
            headers={
                "Authorization": f"Bearer {self._config.api_token}",
                "Content-Type": "application/json",
            },
            json=json,
        )
        raise_for_status(resp, "Cloudflare", action)
        return resp

    # --- Workers ---

    async def put_worker_secret(
        self, account_id: str, script_name: str, name: str, value: str
    ) -> None:
        await self._request(
            "PUT",
            f"/accounts/{account_id}/workers/scripts/{script_name}/secrets",
            f"write worker secret {name} to {script_name}",
            json={"name": name, "text": value, "type": "secret_text"},
        )

    async def list_worker_secrets(self, account_id: str, script_name: str) -> list[dict[str, Any]]:
        """Secret metadata for a Worker. Values are never returned."""
        resp = await self._request(
            "GET",
            f"/accounts/{account_id}/workers/scripts/{script_name}/secrets",
            f"list worker secrets {script_name}",
        )
        return resp.json().get("result") or []

    async def delete_worker_secret(self, account_id: str, script_name: str, name: str) -> bool:
        try:
            await self._request(
                "DELETE",
                f"/accounts/{account_id}/workers/scripts/{script_name}/secrets/{name}",
                f"delete worker secret {name} from {script_name}",
            )
        except RemoteRejectedError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    # --- Pages ---

    async def set_pages_secret(
        self,
        account_id: str,
        project_name: str,
        name: str,
        value: str,
        environment: str = "production",
    ) -> None:
        if environment not in PAGES_ENVIRONMENTS:
            raise ValueError(f"Pages environment must be one of {PAGES_ENVIRONMENTS}")
        await self._request(
            "PATCH",
            f"/accounts/{account_id}/pages/projects/{project_name}",
            f"write pages secret {name} to {project_name}",
            json={
                "deployment_configs": {
                    environment: {
                        "env_vars": {name: {"type": "secret_text", "value": value}},
                    },
                },
            },
        )

    async def delete_pages_secret(
        self,
        account_id: str,
        project_name: str,
        name: str,
        environment: str = "production",
    ) -> None:
        """Remove a Pages env var. Cloudflare deletes keys patched to null."""
        await self._request(
            "PATCH",
            f"/accounts/{account_id}/pages/projects/{project_name}",
            f"delete pages secret {name} from {project_name}",
            json={"deployment_configs": {environment: {"env_vars": {name: None}}}},
        )

    # --- Existence checks ---

    async def worker_exists(self, account_id: str, script_name: str) -> bool:
        return await self._exists(
            f"/accounts/{account_id}/workers/services/{script_name}", f"worker {script_name}"
        )

    async def pages_project_exists(self, account_id: str, project_name: str) -> bool:
        return await self._exists(
            f"/accounts/{account_id}/pages/projects/{project_name}",
            f"pages project {project_name}",
        )

    async def _exists(self, path: str, what: str) -> bool:
        try:
            await self._request("GET", path, f"lookup {what}")
        except RemoteRejectedError as exc:
            if exc.status_code == 404:
                logger.info("Cloudflare resource not found", resource=what)
                return False
            raise
        return True
