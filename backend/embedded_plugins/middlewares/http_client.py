from __future__ import annotations

import asyncio
from typing import Any, Mapping

import httpx

from embedded_plugins import __version__

_DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
_DEFAULT_HEADERS: Mapping[str, str] = {
    "User-Agent": f"embedded-plugins/{__version__}",
}

# Swapped in by tests so upstream services (WAF, LAPI, Sablier) can be faked.
_test_transport_override: httpx.AsyncBaseTransport | None = None


def set_test_transport_override(transport: httpx.AsyncBaseTransport | None) -> None:
    """Route every client created afterwards through ``transport`` (None restores the network)."""
    global _test_transport_override
    _test_transport_override = transport


def _coerce_timeout(value: httpx.Timeout | float | int | None) -> httpx.Timeout:
    if isinstance(value, httpx.Timeout):
        return value
    if isinstance(value, (int, float)) and value > 0:
        return httpx.Timeout(value)
    return _DEFAULT_TIMEOUT


class HTTPClient:
    """Lazily created async client bound to one upstream base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: httpx.Timeout | float | int | None = None,
        headers: Mapping[str, str] | None = None,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._timeout = _coerce_timeout(timeout)
        merged = dict(_DEFAULT_HEADERS)
        if headers:
            merged.update(headers)
        self._headers = merged
        self._verify = verify
        self._transport = transport or _test_transport_override
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        base_url=self._base_url,
                        timeout=self._timeout,
                        headers=self._headers,
                        verify=self._verify,
                        transport=self._transport,
                    )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, path: str = "", **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        if path and not path.startswith("/"):
            path = f"/{path}"
        return await client.request(method, path or "/", **kwargs)

    async def get(self, path: str = "", *, params: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, params=params, **kwargs)
