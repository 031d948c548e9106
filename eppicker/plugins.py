"""Plugin interfaces and the registry of plugin factories."""

from __future__ import annotations

import abc
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping, Optional


class Plugin(abc.ABC):
    """Base of every plugin: a type and an instance name."""

    @property
    @abc.abstractmethod
    def plugin_type(self) -> str:
        """The type of the plugin."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The name of this plugin instance."""


class HandlePlugins(MutableMapping):
    """The set of instantiated plugins, keyed by instance name."""

    def __init__(self, plugins: Optional[Mapping[str, Plugin]] = None) -> None:
        self._plugins: Dict[str, Plugin] = dict(plugins or {})

    def __getitem__(self, name: str) -> Plugin:
        return self._plugins[name]

    def __setitem__(self, name: str, plugin: Plugin) -> None:
        self._plugins[name] = plugin

    def __delitem__(self, name: str) -> None:
        del self._plugins[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._plugins)

    def __len__(self) -> int:
        return len(self._plugins)

    def __repr__(self) -> str:
        return f"HandlePlugins({self._plugins!r})"


@dataclass
class Handle:
    """Standard data and tools handed to plugin factories."""

    plugins: HandlePlugins = field(default_factory=HandlePlugins)


FactoryFunc = Callable[[str, Any, Handle], Plugin]

REGISTRY: Dict[str, FactoryFunc] = {}


def register(plugin_type: str, factory: FactoryFunc) -> None:
    """Register ``factory`` for ``plugin_type``, replacing any earlier one."""
    REGISTRY[plugin_type] = factory


def create(plugin_type: str, name: str, parameters: Any, handle: Handle) -> Plugin:
    """Instantiate a plugin of ``plugin_type`` through its registered factory."""
    try:
        factory = REGISTRY[plugin_type]
    except KeyError:
        raise ValueError(f"unknown plugin type {plugin_type!r}") from None
    return factory(name, parameters, handle)