from __future__ import annotations

"""Assembles ASGI handler chains from traefik style middleware definitions.

    http:
      middlewares:
        waf:
          plugin:
            modsecurity:
              modSecurityUrl: http://waf:8080
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml
from pydantic import BaseModel, Field, ValidationError
from starlette.types import ASGIApp

from embedded_plugins.descriptors import Constructor
from embedded_plugins.errors import MiddlewareChainError
from embedded_plugins.registry import EmbeddedPluginRegistry

_log = logging.getLogger(__name__)


class MiddlewareDefinition(BaseModel):
    # Plugin name (effective, possibly aliased) -> untyped configuration bag.
    plugin: Dict[str, Optional[Dict[str, Any]]] = Field(default_factory=dict)

    model_config = {
        'extra': 'ignore',
    }


def load_middleware_definitions(path: str | Path) -> Dict[str, MiddlewareDefinition]:
    """Read ``http.middlewares`` (or a bare ``middlewares`` mapping) from a YAML file."""
    with Path(path).open('r', encoding='utf-8') as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, Mapping):
        raise MiddlewareChainError(f"YAML root must be a mapping: {path}")
    http_section = payload.get('http')
    section = http_section.get('middlewares') if isinstance(http_section, Mapping) else payload.get('middlewares')
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise MiddlewareChainError(f"middlewares must be a mapping: {path}")

    definitions: Dict[str, MiddlewareDefinition] = {}
    for name, raw in section.items():
        try:
            definitions[str(name)] = MiddlewareDefinition.model_validate(raw or {})
        except ValidationError as exc:
            raise MiddlewareChainError(f"middleware {name}: {exc}") from exc
    return definitions


def build_middleware(
    registry: EmbeddedPluginRegistry,
    ctx: Any,
    middleware_name: str,
    definition: MiddlewareDefinition,
) -> Constructor:
    if not definition.plugin:
        raise MiddlewareChainError(f"middleware {middleware_name}: no plugin configured")
    if len(definition.plugin) > 1:
        raise MiddlewareChainError(
            f"middleware {middleware_name}: exactly one plugin expected, got {', '.join(sorted(definition.plugin))}"
        )
    plugin_name, bag = next(iter(definition.plugin.items()))
    if not registry.is_embedded_plugin(plugin_name):
        raise MiddlewareChainError(f"middleware {middleware_name}: plugin {plugin_name!r} is not an embedded plugin")
    return registry.build_embedded_plugin(ctx, plugin_name, bag or {}, middleware_name)


def build_chain(
    registry: EmbeddedPluginRegistry,
    ctx: Any,
    app: ASGIApp,
    names: Sequence[str],
    definitions: Mapping[str, MiddlewareDefinition],
) -> ASGIApp:
    """Wrap ``app`` so that ``names[0]`` is the outermost middleware.

    Every constructor is built before any of them runs, and nothing is
    returned unless the whole chain could be assembled.
    """
    constructors = []
    for name in names:
        definition = definitions.get(name)
        if definition is None:
            raise MiddlewareChainError(f"middleware {name} does not exist")
        constructors.append(build_middleware(registry, ctx, name, definition))

    handler = app
    for constructor in reversed(constructors):
        handler = constructor(ctx, handler)
    _log.debug("assembled middleware chain: %s", ' -> '.join(names) or '<empty>')
    return handler
