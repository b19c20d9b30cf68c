from __future__ import annotations

"""Active registry of embedded plugins and the builder that hands out constructors.

Operators can publish a plugin under another name through
``<PREFIX>_<PLUGIN>_KEY`` environment variables, e.g.
``TRAEFIK_EMBEDDED_CROWDSEC_KEY=bouncer`` makes the bouncer reachable as
``plugin.bouncer`` instead of ``plugin.crowdsec``. The alias replaces the
default name. Aliases are read once; later environment changes are ignored.
"""

import logging
import os
import threading
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from starlette.types import ASGIApp

from embedded_plugins.core.config import settings
from embedded_plugins.decoding import decode_config
from embedded_plugins.descriptors import EMBEDDED_PLUGINS, Constructor, PluginDescriptor
from embedded_plugins.errors import AliasCollisionError, UnknownPluginError

_log = logging.getLogger(__name__)

AliasLookup = Callable[[str], Optional[str]]


def alias_env_var(plugin_name: str, prefix: str | None = None) -> str:
    """``crowdsec`` -> ``TRAEFIK_EMBEDDED_CROWDSEC_KEY``."""
    return f"{prefix or settings.alias_env_prefix}_{plugin_name.upper()}_KEY"


class EmbeddedPluginRegistry:
    """Effective plugin name -> descriptor. Read-only once built."""

    def __init__(
        self,
        plugins: Mapping[str, PluginDescriptor[Any]],
        *,
        canonical_names: Mapping[str, str] | None = None,
        list_separator: str = ',',
    ) -> None:
        self._plugins = MappingProxyType(dict(plugins))
        self._canonical = MappingProxyType(dict(canonical_names or {name: name for name in plugins}))
        self._separator = list_separator

    def __contains__(self, plugin_name: object) -> bool:
        return plugin_name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    def names(self) -> List[str]:
        return sorted(self._plugins)

    def canonical_name(self, plugin_name: str) -> str | None:
        """Built-in identifier behind an effective (possibly aliased) name."""
        return self._canonical.get(plugin_name)

    def is_embedded_plugin(self, plugin_name: str) -> bool:
        return plugin_name in self._plugins

    def build_embedded_plugin(
        self,
        ctx: Any,
        plugin_name: str,
        config: Mapping[str, Any] | None,
        middleware_name: str,
    ) -> Constructor:
        """Decode ``config`` for ``plugin_name`` and return a constructor bound to it.

        Raises ``UnknownPluginError`` for names that are not registered and
        ``ConfigDecodeError``/``ConfigDecoderError`` when the configuration
        does not fit. Errors from the plugin itself surface when the returned
        constructor is called. When ``ctx`` is a logger (or adapter) the build
        is recorded through it, otherwise through this module's logger.
        """
        descriptor = self._plugins.get(plugin_name)
        if descriptor is None:
            raise UnknownPluginError(plugin_name)

        logger = ctx if isinstance(ctx, (logging.Logger, logging.LoggerAdapter)) else _log
        logger.debug("building embedded plugin plugin=%s middleware=%s", plugin_name, middleware_name)

        cfg = descriptor.create_config()
        if config:
            cfg = decode_config(config, cfg, separator=self._separator)

        def constructor(ctx: Any, next_app: ASGIApp) -> ASGIApp:
            return descriptor.new(ctx, next_app, cfg, middleware_name)

        return constructor


def build_registry(
    table: Mapping[str, PluginDescriptor[Any]] = EMBEDDED_PLUGINS,
    lookup: AliasLookup = os.getenv,
    *,
    prefix: str | None = None,
    list_separator: str | None = None,
) -> EmbeddedPluginRegistry:
    """Resolve operator aliases for every entry of ``table``.

    Two plugins ending up under the same effective name is a configuration
    error (``AliasCollisionError``), whichever way the clash happens.
    """
    plugins: Dict[str, PluginDescriptor[Any]] = {}
    owners: Dict[str, str] = {}
    for default_name, descriptor in table.items():
        env_var = alias_env_var(default_name, prefix)
        custom_name = (lookup(env_var) or '').strip()
        effective = custom_name or default_name
        if effective in owners:
            raise AliasCollisionError(effective, owners[effective], default_name)
        owners[effective] = default_name
        plugins[effective] = descriptor
        if custom_name:
            _log.info(
                "embedded plugin registered with custom key plugin=%s custom_key=%s env_var=%s",
                default_name,
                custom_name,
                env_var,
            )
    return EmbeddedPluginRegistry(
        plugins,
        canonical_names=owners,
        list_separator=list_separator or settings.list_separator,
    )


_registry: EmbeddedPluginRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> EmbeddedPluginRegistry:
    """Process-wide registry, built from the environment on first use."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = build_registry()
    return _registry


def set_test_registry_override(registry: EmbeddedPluginRegistry | None) -> None:
    """Replace the process-wide registry (None rebuilds it on next use)."""
    global _registry
    with _registry_lock:
        _registry = registry


def is_embedded_plugin(plugin_name: str) -> bool:
    return get_registry().is_embedded_plugin(plugin_name)


def build_embedded_plugin(ctx: Any, plugin_name: str, config: Mapping[str, Any] | None, middleware_name: str) -> Constructor:
    return get_registry().build_embedded_plugin(ctx, plugin_name, config, middleware_name)
