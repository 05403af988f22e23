"""Tests for the GitHub REST client against an in-process httpx transport."""

import json

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from secretsync.config import GitHubConfig
from secretsync.errors import RemoteRejectedError, RemoteTransientError
from secretsync.remote.github import GitHubClient, SecretDestination, generate_app_jwt

CODESPACES = SecretDestination(scope="codespaces", owner="acme", repo="widgets")
STAGING = SecretDestination(scope="environment", owner="acme", repo="widgets", environment="staging")

RATE_HEADERS = {
    "X-RateLimit-Remaining": "4990",
    "X-RateLimit-Limit": "5000",
    "X-RateLimit-Reset": "1700000000",
    "X-RateLimit-Resource": "core",
}


class Recorder:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def make_client(recorder: Recorder, **config) -> GitHubClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return GitHubClient(GitHubConfig(token=config.pop("token", "ghp_test"), **config), http=http)


class TestSecretDestination:
    def test_repository_scope_path(self):
        assert CODESPACES.secrets_path == "/repos/acme/widgets/codespaces/secrets"
        assert CODESPACES.identity == "codespaces:acme/widgets"

    def test_environment_scope_path(self):
        assert STAGING.secrets_path == "/repos/acme/widgets/environments/staging/secrets"
        assert STAGING.identity == "environment:acme/widgets:staging"

    def test_environment_required_for_environment_scope(self):
        with pytest.raises(ValueError):
            SecretDestination(scope="environment", owner="acme", repo="widgets")

    def test_environment_rejected_for_other_scopes(self):
        with pytest.raises(ValueError):
            SecretDestination(scope="dependabot", owner="acme", repo="widgets", environment="dev")

    def test_unknown_scope(self):
        with pytest.raises(ValueError, match="Unknown GitHub secret scope"):
            SecretDestination(scope="organization", owner="acme", repo="widgets")


class TestRequests:
    async def test_public_key_request(self):
        recorder = Recorder(httpx.Response(200, json={"key_id": 123, "key": "base64key"}))
        client = make_client(recorder)

        key = await client.get_public_key(STAGING)

        assert key.key_id == "123"
        assert key.key == "base64key"
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/repos/acme/widgets/environments/staging/secrets/public-key"
        assert request.headers["authorization"] == "Bearer ghp_test"
        assert request.headers["accept"] == "application/vnd.github+json"
        assert request.headers["x-github-api-version"] == "2022-11-28"

    async def test_put_secret_body(self):
        recorder = Recorder(httpx.Response(201))
        client = make_client(recorder)

        await client.put_secret(CODESPACES, "API_KEY", "c2VhbGVk", "kid-1")

        request = recorder.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/repos/acme/widgets/codespaces/secrets/API_KEY"
        assert json.loads(request.content) == {"encrypted_value": "c2VhbGVk", "key_id": "kid-1"}

    async def test_delete_missing_secret_returns_false(self):
        client = make_client(Recorder(httpx.Response(404, json={"message": "Not Found"})))
        assert await client.delete_secret(CODESPACES, "GONE") is False

    async def test_delete_existing_secret(self):
        client = make_client(Recorder(httpx.Response(204)))
        assert await client.delete_secret(CODESPACES, "API_KEY") is True

    async def test_delete_forbidden_raises(self):
        client = make_client(Recorder(httpx.Response(403, json={"message": "Forbidden"})))
        with pytest.raises(RemoteRejectedError):
            await client.delete_secret(CODESPACES, "API_KEY")

    async def test_list_secrets_paginates(self):
        page1 = [{"name": f"S_{i}"} for i in range(100)]
        page2 = [{"name": "S_100"}]
        recorder = Recorder(
            httpx.Response(200, json={"total_count": 101, "secrets": page1}),
            httpx.Response(200, json={"total_count": 101, "secrets": page2}),
        )
        client = make_client(recorder)

        secrets = await client.list_secrets(CODESPACES)

        assert len(secrets) == 101
        assert [r.url.params["page"] for r in recorder.requests] == ["1", "2"]
        assert recorder.requests[0].url.params["per_page"] == "100"

    async def test_create_environment(self):
        recorder = Recorder(httpx.Response(200, json={"id": 42, "name": "production"}))
        client = make_client(recorder)

        data = await client.create_or_update_environment(
            "acme", "widgets", "production", {"wait_timer": 0}
        )

        assert data["id"] == 42
        assert recorder.requests[0].url.path == "/repos/acme/widgets/environments/production"
        assert json.loads(recorder.requests[0].content) == {"wait_timer": 0}

    async def test_rate_limit_resources(self):
        recorder = Recorder(
            httpx.Response(
                200, json={"resources": {"core": {"remaining": 1, "limit": 5000, "reset": 1}}}
            )
        )
        client = make_client(recorder)
        resources = await client.get_rate_limit()
        assert resources["core"]["remaining"] == 1


class TestErrorMapping:
    async def test_429_carries_retry_after(self):
        client = make_client(
            Recorder(httpx.Response(429, headers={"Retry-After": "30"}, json={"message": "slow"}))
        )
        with pytest.raises(RemoteTransientError) as exc_info:
            await client.get_public_key(CODESPACES)
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 30

    async def test_5xx_is_transient_without_retry_after(self):
        client = make_client(Recorder(httpx.Response(502, headers={"Retry-After": "30"})))
        with pytest.raises(RemoteTransientError) as exc_info:
            await client.get_public_key(CODESPACES)
        assert exc_info.value.retry_after is None

    async def test_4xx_message_from_body(self):
        client = make_client(
            Recorder(httpx.Response(422, json={"message": "Validation Failed"}))
        )
        with pytest.raises(RemoteRejectedError, match="Validation Failed") as exc_info:
            await client.put_secret(CODESPACES, "API_KEY", "x", "k")
        assert exc_info.value.status_code == 422


class TestRateLimitObserver:
    async def test_observer_receives_lowercased_headers(self):
        seen = []

        async def observer(headers):
            seen.append(headers)

        recorder = Recorder(httpx.Response(201, headers=RATE_HEADERS))
        client = make_client(recorder)
        client.set_rate_limit_observer(observer)

        await client.put_secret(CODESPACES, "API_KEY", "x", "k")

        assert seen[0]["x-ratelimit-remaining"] == "4990"
        assert seen[0]["x-ratelimit-resource"] == "core"

    async def test_observer_sees_failed_responses(self):
        seen = []

        async def observer(headers):
            seen.append(headers)

        client = make_client(Recorder(httpx.Response(403, headers=RATE_HEADERS)))
        client.set_rate_limit_observer(observer)

        with pytest.raises(RemoteRejectedError):
            await client.put_secret(CODESPACES, "API_KEY", "x", "k")
        assert len(seen) == 1

    async def test_responses_without_counters_skip_observer(self):
        seen = []

        async def observer(headers):
            seen.append(headers)

        client = make_client(Recorder(httpx.Response(201)))
        client.set_rate_limit_observer(observer)
        await client.put_secret(CODESPACES, "API_KEY", "x", "k")
        assert seen == []


@pytest.fixture(scope="module")
def app_key_pair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return pem, private_key.public_key()


class TestAppAuth:
    def test_app_jwt_claims(self, app_key_pair):
        pem, public_key = app_key_pair
        token = generate_app_jwt(12345, pem)
        claims = jwt.decode(token, public_key, algorithms=["RS256"])
        assert claims["iss"] == "12345"
        assert claims["exp"] - claims["iat"] == 11 * 60

    async def test_installation_token_cached(self, app_key_pair):
        pem, _ = app_key_pair
        recorder = Recorder(
            httpx.Response(201, json={"token": "ghs_installation"}),
            httpx.Response(200, json={"key_id": "1", "key": "k"}),
            httpx.Response(200, json={"key_id": "1", "key": "k"}),
        )
        client = make_client(recorder, token="", app_id=12345, app_private_key=pem, installation_id=99)

        await client.get_public_key(CODESPACES)
        await client.get_public_key(CODESPACES)

        paths = [r.url.path for r in recorder.requests]
        assert paths.count("/app/installations/99/access_tokens") == 1
        assert recorder.requests[0].headers["authorization"].startswith("Bearer ey")
        assert recorder.requests[1].headers["authorization"] == "Bearer ghs_installation"

    async def test_missing_credentials(self):
        client = make_client(Recorder(), token="")
        with pytest.raises(ValueError, match="credentials not configured"):
            await client.get_public_key(CODESPACES)
