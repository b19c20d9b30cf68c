from __future__ import annotations

"""Client address rewriting for requests arriving through trusted proxies."""

import logging
from typing import Any, List

from pydantic import BaseModel, Field
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from . import netutil

_log = logging.getLogger(__name__)


class Config(BaseModel):
    enabled: bool = True
    trusted_ips: List[str] = Field(default_factory=list)
    forwarded_header: str = 'X-Forwarded-For'
    real_ip_header: str = 'X-Real-Ip'
    # Skip over every trusted hop instead of taking the rightmost entry.
    recursive: bool = True


def create_config() -> Config:
    return Config()


class RealIP:
    def __init__(self, app: ASGIApp, config: Config, name: str) -> None:
        self.app = app
        self.name = name
        self.enabled = config.enabled
        self.trusted = netutil.parse_networks(config.trusted_ips, option='trustedIPs')
        self.forwarded_header = config.forwarded_header.lower()
        self.real_ip_header = config.real_ip_header.lower()
        self.recursive = config.recursive

    def _client_ip(self, scope: Scope) -> netutil.IPAddress | None:
        peer = netutil.peer_ip(scope)
        if not netutil.contains(self.trusted, peer):
            return None
        headers = Headers(scope=scope)
        hops = netutil.forwarded_chain(headers, self.forwarded_header)
        if hops:
            if self.recursive:
                return netutil.resolve_client_ip(scope, self.trusted, header_name=self.forwarded_header)
            return netutil.parse_ip(hops[-1])
        return netutil.parse_ip(headers.get(self.real_ip_header))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.enabled:
            await self.app(scope, receive, send)
            return

        ip = self._client_ip(scope)
        if ip is None:
            await self.app(scope, receive, send)
            return

        client = scope.get("client") or (None, 0)
        rewritten = dict(scope)
        rewritten["client"] = (str(ip), client[1])
        header_key = self.real_ip_header.encode("latin-1")
        headers = [(k, v) for k, v in scope.get("headers", []) if k.lower() != header_key]
        headers.append((header_key, str(ip).encode("latin-1")))
        rewritten["headers"] = headers
        _log.debug("[%s] client address %s -> %s", self.name, client[0], ip)
        await self.app(rewritten, receive, send)


def new(ctx: Any, next_app: ASGIApp, config: Config, name: str) -> RealIP:
    return RealIP(next_app, config, name)
