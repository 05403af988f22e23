"""Per-call context for engine operations.

Everything that identifies who is acting, against which repository and with
which credentials travels here. Services never read request-scoped values
from module globals.
"""

from dataclasses import dataclass

from secretsync.remote.cloudflare import CloudflareClient
from secretsync.remote.github import GitHubClient
from secretsync.remote.neon import NeonClient


@dataclass(frozen=True)
class SyncContext:
    """Identity, repository and remote clients for one engine call.

    `account` is the key the GitHub quota is tracked under; it defaults to the
    repository owner, since the remote limit is per authenticated identity.
    """

    project_id: str
    actor_id: str
    owner: str
    repo: str
    github: GitHubClient
    account: str = ""

    # Cloudflare targets, optional
    cloudflare: CloudflareClient | None = None
    cloudflare_account_id: str | None = None
    cloudflare_worker_name: str | None = None
    cloudflare_pages_project: str | None = None
    cloudflare_pages_environment: str = "production"

    # Neon, used only to verify linked branches
    neon: NeonClient | None = None
    neon_project_id: str | None = None

    def __post_init__(self) -> None:
        if not self.account:
            object.__setattr__(self, "account", self.owner)
