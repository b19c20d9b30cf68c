from __future__ import annotations

"""Table of middleware kinds compiled into the gateway.

Each entry pairs a plugin's default configuration factory with its
constructor. Both halves always come from the same module, so the config
handed to ``new`` is the type that plugin declared. Adding a plugin kind is
one more entry here.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Generic, Mapping, TypeVar

from pydantic import BaseModel
from starlette.types import ASGIApp

from embedded_plugins.middlewares import crowdsec, geoblock, modsecurity, realip, sablier

C = TypeVar('C', bound=BaseModel)

# Deferred factory: (ctx, next_app) -> app, raising if the plugin refuses the config.
Constructor = Callable[[Any, ASGIApp], ASGIApp]


@dataclass(frozen=True, slots=True)
class PluginDescriptor(Generic[C]):
    create_config: Callable[[], C]
    new: Callable[[Any, ASGIApp, C, str], ASGIApp]


EMBEDDED_PLUGINS: Mapping[str, PluginDescriptor[Any]] = MappingProxyType({
    'modsecurity': PluginDescriptor(modsecurity.create_config, modsecurity.new),
    'realip': PluginDescriptor(realip.create_config, realip.new),
    'crowdsec': PluginDescriptor(crowdsec.create_config, crowdsec.new),
    'geoblock': PluginDescriptor(geoblock.create_config, geoblock.new),
    'sablier': PluginDescriptor(sablier.create_config, sablier.new),
})
