from __future__ import annotations

from typing import Iterable, List


class EmbeddedPluginError(Exception):
    """Base class for every failure raised by the embedded plugin registry."""


class UnknownPluginError(EmbeddedPluginError, LookupError):
    def __init__(self, plugin_name: str) -> None:
        self.plugin_name = plugin_name
        super().__init__(f"unknown embedded plugin: {plugin_name}")


class ConfigDecoderError(EmbeddedPluginError):
    """The configuration materializer could not be set up for the target value."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"failed to create configuration decoder: {reason}")


class ConfigDecodeError(EmbeddedPluginError, ValueError):
    """The configuration bag does not fit the plugin's configuration type."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: List[str] = list(errors)
        super().__init__(f"failed to decode configuration: {'; '.join(self.errors)}")


class AliasCollisionError(EmbeddedPluginError):
    def __init__(self, effective_name: str, first: str, second: str) -> None:
        self.effective_name = effective_name
        self.plugins = (first, second)
        super().__init__(
            f"embedded plugins {first!r} and {second!r} both resolve to effective name {effective_name!r}"
        )


class MiddlewareChainError(EmbeddedPluginError):
    pass
