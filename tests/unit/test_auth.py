"""Tests for stored auth profiles and OAuth2 refresh."""

import asyncio

import httpx
import pytest

from actionrail.core.errors import AuthError
from actionrail.transport.auth import AuthManager, AuthProfile, AuthType, validate_profile


class TokenServer:
    """MockTransport handler that issues numbered access tokens."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={"access_token": f"token-{len(self.requests)}", "expires_in": 3600, "refresh_token": "r2"},
        )


def _oauth(**overrides) -> AuthProfile:
    values = {
        "id": "oauth",
        "type": AuthType.OAUTH2,
        "access_token": "stale",
        "refresh_token": "r1",
        "token_endpoint": "https://auth.example.com/token",
        "client_id": "app",
        "client_secret": "secret",
        "expires_at": 1000.0,
    }
    values.update(overrides)
    return AuthProfile(**values)


class TestStaticProfiles:
    @pytest.mark.asyncio
    async def test_bearer_and_basic(self):
        auth = AuthManager()
        auth.register(AuthProfile(id="b", type=AuthType.BEARER, token="abc"))
        auth.register(AuthProfile(id="u", type=AuthType.BASIC, username="user", password="pass"))
        assert (await auth.resolve("b")).headers == {"Authorization": "Bearer abc"}
        assert (await auth.resolve("u")).headers == {"Authorization": "Basic dXNlcjpwYXNz"}

    @pytest.mark.asyncio
    async def test_api_key_locations(self):
        auth = AuthManager()
        auth.register(AuthProfile(id="h", type=AuthType.API_KEY, api_key="k"))
        auth.register(AuthProfile(id="q", type=AuthType.API_KEY, api_key="k", key_name="key", location="query"))
        auth.register(AuthProfile(id="c", type=AuthType.API_KEY, api_key="k", key_name="sid", location="cookie"))
        assert (await auth.resolve("h")).headers == {"X-API-Key": "k"}
        assert (await auth.resolve("q")).params == {"key": "k"}
        assert (await auth.resolve("c")).headers == {"Cookie": "sid=k"}

    @pytest.mark.asyncio
    async def test_custom_headers(self):
        auth = AuthManager()
        auth.register(AuthProfile(id="x", type=AuthType.CUSTOM, headers={"X-Tenant": "t1"}))
        assert (await auth.resolve("x")).headers == {"X-Tenant": "t1"}

    @pytest.mark.asyncio
    async def test_unknown_profile(self):
        with pytest.raises(AuthError) as exc_info:
            await AuthManager().resolve("nope")
        assert exc_info.value.code == "AUTH_PROFILE_NOT_FOUND"

    def test_invalid_profiles_are_rejected(self):
        with pytest.raises(AuthError):
            AuthManager().register(AuthProfile(id="b", type=AuthType.BEARER))
        assert validate_profile(AuthProfile(id="k", type=AuthType.API_KEY, api_key="k", location="body"))
        assert validate_profile(AuthProfile(id="o", type=AuthType.OAUTH2, refresh_token="r"))

    def test_description_hides_secrets(self):
        profile = AuthProfile.from_dict({"id": "b", "type": "bearer", "token": "secret", "ignored": 1})
        described = profile.to_dict()
        assert "secret" not in str(described)
        assert described["type"] == "bearer"


class TestOAuthRefresh:
    @pytest.mark.asyncio
    async def test_refreshes_near_expiry(self, clock):
        server = TokenServer()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            auth = AuthManager(client=client, clock=clock, refresh_margin_s=300)
            auth.register(_oauth(expires_at=clock() + 200))
            parts = await auth.resolve("oauth")
        assert parts.headers == {"Authorization": "Bearer token-1"}
        assert b"grant_type=refresh_token" in server.requests[0].content
        assert server.requests[0].headers["Authorization"].startswith("Basic ")
        profile = auth.get("oauth")
        assert profile.refresh_token == "r2"
        assert profile.expires_at == clock() + 3600

    @pytest.mark.asyncio
    async def test_fresh_token_is_used_as_is(self, clock):
        server = TokenServer()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            auth = AuthManager(client=client, clock=clock)
            auth.register(_oauth(expires_at=clock() + 3600))
            parts = await auth.resolve("oauth")
        assert parts.headers == {"Authorization": "Bearer stale"}
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_request(self, clock):
        server = TokenServer()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            auth = AuthManager(client=client, clock=clock)
            auth.register(_oauth(expires_at=clock()))
            results = await asyncio.gather(*(auth.resolve("oauth") for _ in range(3)))
        assert len(server.requests) == 1
        assert {r.headers["Authorization"] for r in results} == {"Bearer token-1"}

    @pytest.mark.asyncio
    async def test_refresh_failure(self, clock):
        server = TokenServer(status_code=400)
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            auth = AuthManager(client=client, clock=clock)
            auth.register(_oauth(expires_at=clock()))
            with pytest.raises(AuthError) as exc_info:
                await auth.resolve("oauth")
        assert exc_info.value.code == "AUTH_REFRESH_FAILED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>oops</html>"),
            httpx.Response(200, json={"token_type": "bearer"}),
            httpx.Response(200, json=["token"]),
        ],
    )
    async def test_malformed_token_response(self, clock, response):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response)) as client:
            auth = AuthManager(client=client, clock=clock)
            auth.register(_oauth(expires_at=clock()))
            with pytest.raises(AuthError) as exc_info:
                await auth.resolve("oauth")
        assert exc_info.value.code == "AUTH_REFRESH_FAILED"
        assert auth.get("oauth").access_token == "stale"
