import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.services.travelcompositor_client import (
    TokenProvider,
    TravelCompositorAuthError,
    TravelCompositorClient,
    TravelCompositorError,
)

BASE_URL = "https://tc.test/resources"


class FakeProvider:
    """Scripted TravelCompositor API behind an httpx MockTransport."""

    def __init__(self, package_responses=None, expiration=3600):
        self.package_responses = list(package_responses or [])
        self.expiration = expiration
        self.auth_calls = 0
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/authentication/authenticate"):
            self.auth_calls += 1
            body = json.loads(request.content)
            assert body == {"username": "bot", "password": "secret", "micrositeId": "siviajo"}
            return httpx.Response(200, json={"token": f"tok-{self.auth_calls}", "expirationInSeconds": self.expiration})
        status, payload = self.package_responses.pop(0)
        return httpx.Response(status, json=payload)


def _client(provider, max_attempts=3):
    tokens = TokenProvider("bot", "secret", "siviajo", refresh_margin=300)
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(provider.handler))
    return TravelCompositorClient(tokens, base_url=BASE_URL, microsite_id="siviajo", http_client=http,
                                  max_attempts=max_attempts), tokens


def test_fetches_package_info_with_auth_token():
    provider = FakeProvider([(200, {"pricePerPerson": {"amount": 1060}})])
    client, _ = _client(provider)

    info = asyncio.run(client.get_package_info(9001))

    assert info["pricePerPerson"]["amount"] == 1060
    package_request = provider.requests[-1]
    assert package_request.url.path == "/resources/package/siviajo/info/9001"
    assert package_request.headers["auth-token"] == "tok-1"


def test_detail_endpoint_path():
    provider = FakeProvider([(200, {"transports": []})])
    client, _ = _client(provider)

    asyncio.run(client.get_package_detail(9001))

    assert provider.requests[-1].url.path == "/resources/package/siviajo/9001"


def test_token_is_reused_until_close_to_expiry():
    provider = FakeProvider([(200, {}), (200, {})])
    client, tokens = _client(provider)

    async def scenario():
        await client.get_package_info(1)
        await client.get_package_info(2)

    asyncio.run(scenario())
    assert provider.auth_calls == 1

    # Inside the safety margin the token is refreshed before use
    tokens.expires_at = datetime.now(timezone.utc) + timedelta(seconds=120)
    assert tokens.is_valid() is False


def test_not_found_returns_none():
    provider = FakeProvider([(404, {"error": "not found"})])
    client, _ = _client(provider)

    assert asyncio.run(client.get_package_info(1)) is None


def test_unauthorized_refreshes_token_and_retries():
    provider = FakeProvider([(401, {}), (200, {"title": "ok"})])
    client, _ = _client(provider)

    info = asyncio.run(client.get_package_info(1))

    assert info == {"title": "ok"}
    assert provider.auth_calls == 2
    assert provider.requests[-1].headers["auth-token"] == "tok-2"


def test_server_error_raises():
    provider = FakeProvider([(500, {"error": "boom"})])
    client, _ = _client(provider)

    with pytest.raises(TravelCompositorError) as exc:
        asyncio.run(client.get_package_info(1))
    assert exc.value.status_code == 500


def test_auth_failure_raises_auth_error():
    def handler(request):
        return httpx.Response(403, text="bad credentials")

    tokens = TokenProvider("bot", "wrong", "siviajo")
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    client = TravelCompositorClient(tokens, base_url=BASE_URL, http_client=http)

    with pytest.raises(TravelCompositorAuthError):
        asyncio.run(client.get_package_info(1))
