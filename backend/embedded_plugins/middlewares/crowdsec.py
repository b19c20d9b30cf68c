from __future__ import annotations

"""CrowdSec bouncer: consults the Local API for ban decisions per client address."""

import logging
import time
from collections import OrderedDict
from typing import Any, List, Literal, Tuple

import httpx
from pydantic import BaseModel, Field
from fastapi.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from . import netutil
from .http_client import HTTPClient

_log = logging.getLogger(__name__)

DECISIONS_PATH = '/v1/decisions'
_SUPPORTED_MODES = ('none', 'live')
# Hard cap on remembered decisions; the oldest entry is evicted first.
CACHE_MAX_ENTRIES = 10_000


class Config(BaseModel):
    enabled: bool = False
    crowdsec_mode: Literal['none', 'live', 'stream', 'alone'] = 'live'
    crowdsec_lapi_scheme: Literal['http', 'https'] = 'http'
    crowdsec_lapi_host: str = 'crowdsec:8080'
    crowdsec_lapi_key: str = ''
    crowdsec_lapi_tls_insecure_verify: bool = False
    default_decision_seconds: int = 60
    http_timeout_seconds: int = 10
    forwarded_headers_custom_name: str = 'X-Forwarded-For'
    forwarded_headers_trusted_ips: List[str] = Field(default_factory=list)
    client_trusted_ips: List[str] = Field(default_factory=list)
    remediation_status_code: int = 403
    # Let traffic through when the Local API cannot be reached.
    fail_open: bool = False


def create_config() -> Config:
    return Config()


class Bouncer:
    def __init__(self, app: ASGIApp, config: Config, name: str, *, client: HTTPClient | None = None) -> None:
        self.app = app
        self.name = name
        self.config = config
        self.client: HTTPClient | None = None
        self._cache: OrderedDict[str, Tuple[bool, float]] = OrderedDict()
        self.cache_max_entries = CACHE_MAX_ENTRIES
        if not config.enabled:
            return
        if config.crowdsec_mode not in _SUPPORTED_MODES:
            raise ValueError(f"crowdsecMode {config.crowdsec_mode!r} is not supported, use one of {', '.join(_SUPPORTED_MODES)}")
        if not config.crowdsec_lapi_key.strip():
            raise ValueError("crowdsecLapiKey must be set when the bouncer is enabled")
        if not config.crowdsec_lapi_host.strip():
            raise ValueError("crowdsecLapiHost cannot be empty")
        if not 100 <= config.remediation_status_code <= 599:
            raise ValueError(f"remediationStatusCode must be a valid HTTP status, got {config.remediation_status_code}")
        self.forwarded_trusted = netutil.parse_networks(config.forwarded_headers_trusted_ips, option='forwardedHeadersTrustedIPs')
        self.client_trusted = netutil.parse_networks(config.client_trusted_ips, option='clientTrustedIPs')
        self.client = client or HTTPClient(
            f"{config.crowdsec_lapi_scheme}://{config.crowdsec_lapi_host.strip()}",
            timeout=config.http_timeout_seconds,
            headers={'X-Api-Key': config.crowdsec_lapi_key.strip()},
            verify=not config.crowdsec_lapi_tls_insecure_verify,
        )

    def _cached(self, ip: str) -> bool | None:
        entry = self._cache.get(ip)
        if entry is None:
            return None
        banned, expires = entry
        if expires < time.monotonic():
            self._cache.pop(ip, None)
            return None
        return banned

    def _remember(self, ip: str, banned: bool) -> None:
        self._cache[ip] = (banned, time.monotonic() + self.config.default_decision_seconds)
        self._cache.move_to_end(ip)
        while len(self._cache) > self.cache_max_entries:
            self._cache.popitem(last=False)

    async def is_banned(self, ip: str) -> bool:
        """Ask the Local API (or the live cache) whether ``ip`` carries a ban decision."""
        if self.config.crowdsec_mode == 'live':
            cached = self._cached(ip)
            if cached is not None:
                return cached
        if self.client is None:
            raise RuntimeError(f"bouncer {self.name} is disabled and has no LAPI client")
        response = await self.client.get(DECISIONS_PATH, params={'type': 'ban', 'ip': ip})
        response.raise_for_status()
        decisions = response.json() if response.content else None
        banned = bool(decisions)
        if self.config.crowdsec_mode == 'live':
            self._remember(ip, banned)
        return banned

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.config.enabled:
            await self.app(scope, receive, send)
            return

        ip = netutil.resolve_client_ip(
            scope,
            self.forwarded_trusted,
            header_name=self.config.forwarded_headers_custom_name.lower(),
        )
        if ip is None or netutil.contains(self.client_trusted, ip):
            await self.app(scope, receive, send)
            return

        try:
            banned = await self.is_banned(str(ip))
        except (httpx.HTTPError, ValueError) as exc:
            _log.error("[%s] crowdsec LAPI query failed for %s: %s", self.name, ip, exc)
            banned = not self.config.fail_open

        if banned:
            _log.info("[%s] blocking %s", self.name, ip)
            response = PlainTextResponse("Forbidden", status_code=self.config.remediation_status_code)
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)


def new(ctx: Any, next_app: ASGIApp, config: Config, name: str) -> Bouncer:
    return Bouncer(next_app, config, name)
