from __future__ import annotations

import logging

from embedded_plugins.core.config import settings
from embedded_plugins.core.logging_config import configure_logging
from embedded_plugins.registry import EmbeddedPluginRegistry, get_registry

_log = logging.getLogger(__name__)


def initialize() -> EmbeddedPluginRegistry:
    """Process start hook: set up logging, then freeze the plugin registry.

    Must run before the gateway builds its first handler chain so alias
    resolution happens exactly once.
    """
    configure_logging(settings.log_level)
    registry = get_registry()
    _log.info(
        "embedded plugins ready version=%s plugins=%s",
        settings.version,
        ', '.join(f"{name}({registry.canonical_name(name)})" if registry.canonical_name(name) != name else name
                  for name in registry.names()),
    )
    return registry
