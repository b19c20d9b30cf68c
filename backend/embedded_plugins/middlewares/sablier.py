from __future__ import annotations

"""Scale-to-zero gate: asks a Sablier server to wake the backing workloads first."""

import logging
from typing import Any, List, Tuple

import httpx
from pydantic import BaseModel, Field
from fastapi.responses import PlainTextResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from .http_client import HTTPClient

_log = logging.getLogger(__name__)

SESSION_STATUS_HEADER = 'X-Sablier-Session-Status'


class DynamicConfig(BaseModel):
    display_name: str = ''
    show_details: bool | None = None
    theme: str = ''
    refresh_frequency: str = ''


class BlockingConfig(BaseModel):
    timeout: str = ''


class Config(BaseModel):
    sablier_url: str = 'http://sablier:10000'
    names: List[str] = Field(default_factory=list)
    group: str = ''
    session_duration: str = ''
    dynamic: DynamicConfig | None = None
    blocking: BlockingConfig | None = None


def create_config() -> Config:
    return Config()


def _strategy_params(config: Config) -> Tuple[str, List[Tuple[str, str]]]:
    names = [n.strip() for n in config.names if n.strip()]
    group = config.group.strip()
    if bool(names) == bool(group):
        raise ValueError("exactly one of names or group must be configured")
    if (config.dynamic is None) == (config.blocking is None):
        raise ValueError("exactly one of dynamic or blocking strategy must be configured")

    params: List[Tuple[str, str]] = [('names', n) for n in names]
    if group:
        params.append(('group', group))
    if config.session_duration:
        params.append(('session_duration', config.session_duration))

    if config.dynamic is not None:
        dynamic = config.dynamic
        for key, value in (
            ('display_name', dynamic.display_name),
            ('theme', dynamic.theme),
            ('refresh_frequency', dynamic.refresh_frequency),
        ):
            if value:
                params.append((key, value))
        if dynamic.show_details is not None:
            params.append(('show_details', 'true' if dynamic.show_details else 'false'))
        return '/api/strategies/dynamic', params

    if config.blocking is not None and config.blocking.timeout:
        params.append(('timeout', config.blocking.timeout))
    return '/api/strategies/blocking', params


class Sablier:
    def __init__(self, app: ASGIApp, config: Config, name: str, *, client: HTTPClient | None = None) -> None:
        if not config.sablier_url.strip():
            raise ValueError("sablierUrl cannot be empty")
        self.app = app
        self.name = name
        self.path, self.params = _strategy_params(config)
        self.dynamic = config.dynamic is not None
        # Blocking requests are held by Sablier until the workload is up.
        self.client = client or HTTPClient(config.sablier_url.strip(), timeout=None if self.dynamic else 3600)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            answer = await self.client.get(self.path, params=self.params)
        except httpx.HTTPError as exc:
            _log.error("[%s] sablier request failed: %s", self.name, exc)
            await PlainTextResponse("Bad Gateway", status_code=502)(scope, receive, send)
            return

        if answer.headers.get(SESSION_STATUS_HEADER, '').lower() == 'ready':
            await self.app(scope, receive, send)
            return

        if self.dynamic and answer.status_code < 400:
            response = Response(
                content=answer.content,
                status_code=answer.status_code,
                media_type=answer.headers.get('content-type', 'text/html'),
                headers={'Cache-Control': 'no-cache'},
            )
        else:
            _log.info("[%s] session not ready status=%s", self.name, answer.status_code)
            status = answer.status_code if answer.status_code >= 400 else 503
            response = PlainTextResponse(answer.text or "Service Unavailable", status_code=status)
        await response(scope, receive, send)


def new(ctx: Any, next_app: ASGIApp, config: Config, name: str) -> Sablier:
    return Sablier(next_app, config, name)
