from __future__ import annotations

"""Request inspection through an external ModSecurity (OWASP CRS) endpoint."""

import logging
import time
from typing import Any, List, Tuple

import httpx
from pydantic import BaseModel
from fastapi.responses import PlainTextResponse, Response
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .http_client import HTTPClient

_log = logging.getLogger(__name__)

# Hop-by-hop and framing headers that must not be copied between connections.
_SKIP_HEADERS = frozenset({
    'host', 'connection', 'keep-alive', 'transfer-encoding', 'content-length',
    'content-encoding', 'upgrade', 'proxy-connection', 'te', 'trailer',
})


class Config(BaseModel):
    modsecurity_url: str = ''
    timeout_millis: int = 2000
    # Seconds to bypass the WAF after it failed to answer; 0 keeps failing closed.
    unhealthy_waf_backoff_period_secs: int = 0
    max_body_size_bytes: int = 10 * 1024 * 1024


def create_config() -> Config:
    return Config()


class _BodyTooLarge(Exception):
    pass


class _ClientDisconnected(Exception):
    pass


def _copy_headers(headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in _SKIP_HEADERS]


class ModSecurity:
    def __init__(self, app: ASGIApp, config: Config, name: str, *, client: HTTPClient | None = None) -> None:
        if not config.modsecurity_url.strip():
            raise ValueError("modSecurityUrl cannot be empty")
        if config.max_body_size_bytes <= 0:
            raise ValueError("maxBodySizeBytes must be positive")
        self.app = app
        self.name = name
        self.config = config
        self.client = client or HTTPClient(
            config.modsecurity_url.strip(),
            timeout=max(config.timeout_millis, 1) / 1000.0,
        )
        self._unhealthy_until = 0.0

    async def _read_body(self, receive: Receive) -> bytes:
        chunks: List[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise _ClientDisconnected()
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.config.max_body_size_bytes:
                raise _BodyTooLarge()
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks)

    @staticmethod
    def _replay(body: bytes, receive: Receive) -> Receive:
        sent = False

        async def replay() -> Message:
            nonlocal sent
            if not sent:
                sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if self._unhealthy_until and time.monotonic() < self._unhealthy_until:
            await self.app(scope, receive, send)
            return

        try:
            body = await self._read_body(receive)
        except _ClientDisconnected:
            _log.debug("[%s] client disconnected before the body was read", self.name)
            return
        except _BodyTooLarge:
            await PlainTextResponse("Request Entity Too Large", status_code=413)(scope, receive, send)
            return

        path = scope.get("path", "/")
        query = scope.get("query_string", b"")
        if query:
            path = f"{path}?{query.decode('latin-1')}"
        headers = _copy_headers(Headers(scope=scope).items())

        try:
            verdict = await self.client.request(scope.get("method", "GET"), path, headers=headers, content=body)
        except httpx.HTTPError as exc:
            _log.error("[%s] modsecurity request failed: %s", self.name, exc)
            backoff = self.config.unhealthy_waf_backoff_period_secs
            if backoff > 0:
                self._unhealthy_until = time.monotonic() + backoff
                _log.warning("[%s] bypassing WAF for %ss", self.name, backoff)
            await PlainTextResponse("Bad Gateway", status_code=502)(scope, receive, send)
            return

        if verdict.status_code >= 400:
            _log.info("[%s] request blocked by WAF status=%s path=%s", self.name, verdict.status_code, path)
            response = Response(
                content=verdict.content,
                status_code=verdict.status_code,
                headers=dict(_copy_headers(list(verdict.headers.items()))),
            )
            await response(scope, receive, send)
            return

        await self.app(scope, self._replay(body, receive), send)


def new(ctx: Any, next_app: ASGIApp, config: Config, name: str) -> ModSecurity:
    return ModSecurity(next_app, config, name)
