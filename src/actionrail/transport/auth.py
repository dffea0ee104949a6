"""Stored authentication profiles.

A remote action names a profile id; at call time the profile is resolved
into headers, query parameters or a cookie. OAuth2 profiles refresh their
access token when it is within ``refresh_margin_s`` of expiry, and
concurrent refreshes for one profile share a single token request.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import httpx

from actionrail.core.errors import AuthError

logger = logging.getLogger("actionrail.auth")


class AuthType(str, Enum):
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"
    OAUTH2 = "oauth2"
    CUSTOM = "custom"


API_KEY_LOCATIONS = ("header", "query", "cookie")


@dataclass
class AuthProfile:
    id: str
    type: AuthType
    token: str | None = None
    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    key_name: str = "X-API-Key"
    location: str = "header"
    access_token: str | None = None
    refresh_token: str | None = None
    token_endpoint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None
    expires_at: float | None = None  # epoch seconds
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthProfile:
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        values["type"] = AuthType(data["type"])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Profile description with every secret redacted."""
        return {
            "id": self.id,
            "type": self.type.value,
            "location": self.location if self.type is AuthType.API_KEY else None,
            "key_name": self.key_name if self.type is AuthType.API_KEY else None,
            "token_endpoint": self.token_endpoint,
            "expires_at": self.expires_at,
            "has_refresh_token": bool(self.refresh_token),
            "header_names": sorted(self.headers),
        }


@dataclass
class AuthParts:
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


def validate_profile(profile: AuthProfile) -> list[str]:
    errors: list[str] = []
    if not profile.id:
        errors.append("id is required")
    if profile.type is AuthType.BEARER and not profile.token:
        errors.append("bearer profiles need a token")
    elif profile.type is AuthType.BASIC and not (profile.username and profile.password is not None):
        errors.append("basic profiles need a username and password")
    elif profile.type is AuthType.API_KEY:
        if not profile.api_key:
            errors.append("api_key profiles need an api_key")
        if profile.location not in API_KEY_LOCATIONS:
            errors.append(f"api_key location must be one of {', '.join(API_KEY_LOCATIONS)}")
    elif profile.type is AuthType.OAUTH2:
        if not profile.access_token and not profile.refresh_token:
            errors.append("oauth2 profiles need an access_token or refresh_token")
        if profile.refresh_token and not profile.token_endpoint:
            errors.append("oauth2 profiles with a refresh_token need a token_endpoint")
    elif profile.type is AuthType.CUSTOM and not profile.headers:
        errors.append("custom profiles need at least one header")
    return errors


class AuthManager:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        refresh_margin_s: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.refresh_margin_s = refresh_margin_s
        self._clock = clock
        self._profiles: dict[str, AuthProfile] = {}
        self._refreshing: dict[str, asyncio.Task[AuthProfile]] = {}

    def bind_client(self, client: httpx.AsyncClient) -> None:
        """Client used for token refresh requests when none was injected."""
        if self._client is None:
            self._client = client

    def register(self, profile: AuthProfile) -> None:
        errors = validate_profile(profile)
        if errors:
            raise AuthError(f"Invalid auth profile {profile.id!r}: {'; '.join(errors)}", code="INVALID_AUTH_PROFILE")
        self._profiles[profile.id] = profile
        logger.debug("Registered %s auth profile %s", profile.type.value, profile.id)

    def remove(self, profile_id: str) -> bool:
        return self._profiles.pop(profile_id, None) is not None

    def get(self, profile_id: str) -> AuthProfile | None:
        return self._profiles.get(profile_id)

    def list_profiles(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self._profiles.values()]

    def needs_refresh(self, profile: AuthProfile) -> bool:
        if profile.type is not AuthType.OAUTH2 or not profile.refresh_token:
            return False
        if not profile.access_token:
            return True
        if profile.expires_at is None:
            return False
        return self._clock() >= profile.expires_at - self.refresh_margin_s

    async def resolve(self, profile_id: str) -> AuthParts:
        """Headers and query parameters that authenticate one request."""
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise AuthError(f"Unknown auth profile {profile_id!r}", code="AUTH_PROFILE_NOT_FOUND")

        parts = AuthParts()
        if profile.type is AuthType.BEARER:
            parts.headers["Authorization"] = f"Bearer {profile.token}"
        elif profile.type is AuthType.BASIC:
            raw = f"{profile.username}:{profile.password}".encode()
            parts.headers["Authorization"] = f"Basic {base64.b64encode(raw).decode('ascii')}"
        elif profile.type is AuthType.API_KEY:
            if profile.location == "query":
                parts.params[profile.key_name] = profile.api_key or ""
            elif profile.location == "cookie":
                parts.headers["Cookie"] = f"{profile.key_name}={profile.api_key}"
            else:
                parts.headers[profile.key_name] = profile.api_key or ""
        elif profile.type is AuthType.OAUTH2:
            if self.needs_refresh(profile):
                profile = await self.refresh(profile_id)
            parts.headers["Authorization"] = f"Bearer {profile.access_token}"
        else:
            parts.headers.update(profile.headers)
        return parts

    async def refresh(self, profile_id: str) -> AuthProfile:
        """Exchange the refresh token for a new access token.

        Callers arriving while a refresh for the same profile is running
        wait for that refresh instead of starting another.
        """
        task = self._refreshing.get(profile_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(profile_id))
            self._refreshing[profile_id] = task
            task.add_done_callback(lambda _t: self._refreshing.pop(profile_id, None))
        return await asyncio.shield(task)

    async def _refresh(self, profile_id: str) -> AuthProfile:
        profile = self._profiles[profile_id]
        if not profile.refresh_token or not profile.token_endpoint:
            raise AuthError(f"Profile {profile_id!r} cannot be refreshed", code="AUTH_REFRESH_UNAVAILABLE")

        data = {"grant_type": "refresh_token", "refresh_token": profile.refresh_token}
        if profile.scope:
            data["scope"] = profile.scope
        auth = None
        if profile.client_id and profile.client_secret:
            auth = httpx.BasicAuth(profile.client_id, profile.client_secret)
        elif profile.client_id:
            data["client_id"] = profile.client_id

        client = self._client
        owns_client = client is None
        if client is None:
            client = httpx.AsyncClient()
        try:
            response = await client.post(profile.token_endpoint, data=data, auth=auth)
        except httpx.HTTPError as exc:
            raise AuthError(f"Token refresh for {profile_id!r} failed: {exc}", code="AUTH_REFRESH_FAILED") from exc
        finally:
            if owns_client:
                await client.aclose()

        if response.status_code >= 400:
            raise AuthError(
                f"Token refresh for {profile_id!r} failed with {response.status_code}",
                code="AUTH_REFRESH_FAILED",
                context={"status_code": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError(
                f"Token refresh for {profile_id!r} returned a non-JSON body",
                code="AUTH_REFRESH_FAILED",
                context={"status_code": response.status_code},
            ) from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthError(
                f"Token refresh for {profile_id!r} returned no access_token",
                code="AUTH_REFRESH_FAILED",
                context={"status_code": response.status_code},
            )
        profile.access_token = payload["access_token"]
        if payload.get("refresh_token"):
            profile.refresh_token = payload["refresh_token"]
        expires_in = payload.get("expires_in")
        profile.expires_at = self._clock() + float(expires_in) if expires_in else None
        logger.info("Refreshed OAuth2 token for profile %s", profile_id)
        return profile
