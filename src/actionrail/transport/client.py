"""Outbound HTTP transport.

Wraps one ``httpx.AsyncClient``. Named interceptors are installed as httpx
event hooks (request hooks see the outgoing ``httpx.Request``, response
hooks the ``httpx.Response``); error interceptors are called with the
classified error before it is raised. An interceptor that raises is logged
and skipped.

Failures are mapped into the action error taxonomy:

    httpx.TimeoutException      -> ActionTimeoutError
    other httpx transport error -> NetworkError (no status, retryable)
    401 / 403                   -> AuthError
    other 4xx                   -> NetworkError (client, not retryable)
    5xx                         -> NetworkError (server, retryable)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from actionrail.core.config import DEFAULT_USER_AGENT
from actionrail.core.errors import ActionError, ActionTimeoutError, AuthError, NetworkError
from actionrail.transport.auth import AuthManager

logger = logging.getLogger("actionrail.transport")

Hook = Callable[[Any], Any]


@dataclass
class Interceptor:
    name: str
    on_request: Hook | None = None
    on_response: Hook | None = None
    on_error: Hook | None = None


@dataclass
class TransportResponse:
    status_code: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_code": self.status_code,
            "data": self.data,
            "headers": self.headers,
            "url": self.url,
            "elapsed_ms": self.elapsed_ms,
        }


async def _call_hook(name: str, hook: Hook, arg: Any) -> None:
    try:
        result = hook(arg)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.warning("Interceptor %s failed", name, exc_info=True)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except Exception:
        text = response.text.strip()
        return text[:200] if text else response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if detail is not None:
            return str(detail)
    return str(body)[:200]


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


async def _log_request(request: httpx.Request) -> None:
    logger.debug("-> %s %s", request.method, request.url)


async def _log_response(response: httpx.Response) -> None:
    logger.debug("<- %s %s %d", response.request.method, response.request.url, response.status_code)


class HttpTransport:
    """Async HTTP client with auth profiles, interceptors and request metrics."""

    def __init__(
        self,
        *,
        auth: AuthManager | None = None,
        default_headers: dict[str, str] | None = None,
        timeout_ms: int = 30_000,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_metrics: int = 1000,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.auth = auth or AuthManager()
        headers = {"User-Agent": user_agent, "Accept": "application/json"}
        headers.update(default_headers or {})
        self._client = client or httpx.AsyncClient(
            transport=transport,
            timeout=timeout_ms / 1000,
            headers=headers,
        )
        if client is not None:
            self._client.headers.update(headers)
        self._owns_client = client is None
        self.auth.bind_client(self._client)
        self._interceptors: dict[str, Interceptor] = {}
        self._metrics: deque[dict[str, Any]] = deque(maxlen=max_metrics)
        self.add_interceptor("logging", on_request=_log_request, on_response=_log_response)

    # --- Interceptors ---

    def add_interceptor(
        self,
        name: str,
        *,
        on_request: Hook | None = None,
        on_response: Hook | None = None,
        on_error: Hook | None = None,
    ) -> None:
        """Install (or replace) a named interceptor."""
        self._interceptors[name] = Interceptor(name, on_request, on_response, on_error)
        self._install_hooks()

    def remove_interceptor(self, name: str) -> bool:
        removed = self._interceptors.pop(name, None) is not None
        if removed:
            self._install_hooks()
        return removed

    def interceptor_names(self) -> list[str]:
        return list(self._interceptors)

    def _install_hooks(self) -> None:
        def wrap(name: str, hook: Hook) -> Callable[[Any], Any]:
            async def run(arg: Any) -> None:
                await _call_hook(name, hook, arg)

            return run

        self._client.event_hooks = {
            "request": [wrap(i.name, i.on_request) for i in self._interceptors.values() if i.on_request],
            "response": [wrap(i.name, i.on_response) for i in self._interceptors.values() if i.on_response],
        }

    # --- Headers ---

    def set_default_header(self, name: str, value: str) -> None:
        self._client.headers[name] = value

    def remove_default_header(self, name: str) -> None:
        self._client.headers.pop(name, None)

    # --- Requests ---

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout_ms: int | None = None,
        auth_profile: str | None = None,
        action_id: str | None = None,
    ) -> TransportResponse:
        """Send one request and return the decoded response.

        Raises ActionTimeoutError, NetworkError or AuthError on failure.
        """
        method = method.upper()
        request_headers = dict(headers or {})
        request_params = dict(params or {})
        if auth_profile:
            parts = await self.auth.resolve(auth_profile)
            request_headers.update(parts.headers)
            request_params.update(parts.params)

        timeout = (timeout_ms or self.timeout_ms) / 1000
        started = time.perf_counter()
        status: int | None = None
        try:
            response = await self._client.request(
                method,
                url,
                headers=request_headers,
                params=request_params or None,
                json=json if json is not None and method not in ("GET", "HEAD") else None,
                timeout=timeout,
            )
            status = response.status_code
            elapsed_ms = (time.perf_counter() - started) * 1000
            if status >= 400:
                raise self._status_error(response, method, url, action_id)
            return TransportResponse(
                status_code=status,
                data=_decode(response),
                headers=dict(response.headers),
                url=str(response.url),
                elapsed_ms=elapsed_ms,
            )
        except httpx.TimeoutException as exc:
            error: ActionError = ActionTimeoutError(
                f"{method} {url} timed out after {timeout * 1000:.0f}ms",
                timeout_ms=timeout * 1000,
                action_id=action_id,
            )
            await self._on_error(error)
            raise error from exc
        except httpx.HTTPError as exc:
            error = NetworkError(f"{method} {url} failed: {exc}", action_id=action_id)
            await self._on_error(error)
            raise error from exc
        except ActionError as exc:
            await self._on_error(exc)
            raise
        finally:
            self._record(method, url, status, (time.perf_counter() - started) * 1000)

    def _status_error(self, response: httpx.Response, method: str, url: str, action_id: str | None) -> ActionError:
        detail = _error_detail(response)
        message = f"{method} {url} -> {response.status_code}: {detail}"
        if response.status_code in (401, 403):
            return AuthError(message, action_id=action_id, context={"status_code": response.status_code})
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return NetworkError(message, status_code=response.status_code, response_body=body, action_id=action_id)

    async def _on_error(self, error: ActionError) -> None:
        for interceptor in list(self._interceptors.values()):
            if interceptor.on_error:
                await _call_hook(interceptor.name, interceptor.on_error, error)

    async def get(self, url: str, **kwargs: Any) -> TransportResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> TransportResponse:
        return await self.request("POST", url, **kwargs)

    # --- Metrics ---

    def _record(self, method: str, url: str, status: int | None, elapsed_ms: float) -> None:
        self._metrics.append(
            {
                "method": method,
                "url": url,
                "status_code": status,
                "elapsed_ms": elapsed_ms,
                "ok": status is not None and status < 400,
                "at": time.time(),
            }
        )

    def stats(self) -> dict[str, Any]:
        total = len(self._metrics)
        failures = sum(1 for m in self._metrics if not m["ok"])
        return {
            "requests": total,
            "failures": failures,
            "error_rate": failures / total if total else 0.0,
            "avg_elapsed_ms": sum(m["elapsed_ms"] for m in self._metrics) / total if total else 0.0,
        }

    def recent_requests(self, limit: int = 50) -> list[dict[str, Any]]:
        return list(self._metrics)[-limit:]

    # --- Lifecycle ---

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
