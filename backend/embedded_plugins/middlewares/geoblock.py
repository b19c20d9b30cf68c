from __future__ import annotations

"""Country based request filtering driven by an upstream geolocation header."""

import logging
from typing import Any, List

from pydantic import BaseModel, Field
from fastapi.responses import PlainTextResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from . import netutil

_log = logging.getLogger(__name__)

# Placeholders CDNs emit when they cannot place an address.
_UNKNOWN_COUNTRIES = frozenset({'', 'XX', 'T1', 'ZZ'})


class Config(BaseModel):
    enabled: bool = True
    country_header: str = 'CF-IPCountry'
    allowed_countries: List[str] = Field(default_factory=list)
    blocked_countries: List[str] = Field(default_factory=list)
    allow_local_requests: bool = True
    allow_unknown_countries: bool = False
    http_status_code_denied_request: int = 403
    log_allowed_requests: bool = False


def create_config() -> Config:
    return Config()


def _normalize(codes: List[str]) -> frozenset[str]:
    return frozenset(code.strip().upper() for code in codes if code.strip())


class GeoBlock:
    def __init__(self, app: ASGIApp, config: Config, name: str) -> None:
        if not 100 <= config.http_status_code_denied_request <= 599:
            raise ValueError(f"httpStatusCodeDeniedRequest must be a valid HTTP status, got {config.http_status_code_denied_request}")
        self.app = app
        self.name = name
        self.config = config
        self.allowed = _normalize(config.allowed_countries)
        self.blocked = _normalize(config.blocked_countries)

    def is_allowed(self, scope: Scope) -> tuple[bool, str]:
        ip = netutil.peer_ip(scope)
        if self.config.allow_local_requests and ip is not None and (ip.is_private or ip.is_loopback):
            return True, 'local'
        country = (Headers(scope=scope).get(self.config.country_header) or '').strip().upper()
        if country in _UNKNOWN_COUNTRIES:
            return self.config.allow_unknown_countries, 'unknown'
        if country in self.blocked:
            return False, country
        if self.allowed:
            return country in self.allowed, country
        return True, country

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.config.enabled:
            await self.app(scope, receive, send)
            return

        allowed, country = self.is_allowed(scope)
        if not allowed:
            _log.info("[%s] request from %s denied (country=%s)", self.name, (scope.get("client") or ("?",))[0], country)
            response = PlainTextResponse("Forbidden", status_code=self.config.http_status_code_denied_request)
            await response(scope, receive, send)
            return
        if self.config.log_allowed_requests:
            _log.info("[%s] request allowed (country=%s)", self.name, country)
        await self.app(scope, receive, send)


def new(ctx: Any, next_app: ASGIApp, config: Config, name: str) -> GeoBlock:
    return GeoBlock(next_app, config, name)
