"""Plugin registry for ``plugin`` workflow steps.

A plugin is a named set of actions. Each action is called with
``(params, context)`` and may be sync or async.

Plugins are registered in code:

    registry.register("slack", {"post": post_message}, version="1.2.0")

or exposed by installed packages through an entry point:

    # pyproject.toml
    [project.entry-points."workflow_orchestrator.plugins"]
    slack = "my_package.slack:plugin"

where the target is either a dict of actions or an object with an
``actions`` mapping (and optionally ``version`` / ``description``).
"""

import importlib.metadata
from typing import Any, Callable, Optional

import structlog

from workflow.ports import PluginRegistry as PluginRegistryPort

logger = structlog.get_logger(__name__)


class PluginInfo:
    """A loaded plugin and its actions."""

    def __init__(
        self,
        name: str,
        actions: Optional[dict[str, Callable]] = None,
        version: str = "0.0.0",
        description: str = "",
        source: str = "code",
    ):
        self.name = name
        self.actions = dict(actions or {})
        self.version = version
        self.description = description
        self.source = source  # "code" or "entrypoint"
        self.enabled = True
        self.errors: list[str] = []

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "source": self.source,
            "enabled": self.enabled,
            "actions": sorted(self.actions),
            "errors": self.errors,
        }


class PluginRegistry(PluginRegistryPort):
    """Holds plugins by name; disabled plugins are invisible to get_plugin()."""

    ENTRY_POINT_GROUP = "workflow_orchestrator.plugins"

    def __init__(self):
        self.plugins: dict[str, PluginInfo] = {}

    def register(
        self,
        name: str,
        actions: dict[str, Callable],
        version: str = "0.0.0",
        description: str = "",
    ) -> PluginInfo:
        """Register (or replace) a plugin."""
        if not name:
            raise ValueError("Plugin name is required")
        info = PluginInfo(name, actions, version=version, description=description)
        self.plugins[name] = info
        logger.info("Plugin registered", plugin=name, actions=sorted(info.actions))
        return info

    def unregister(self, name: str) -> bool:
        return self.plugins.pop(name, None) is not None

    def get_plugin(self, name: str) -> Optional[PluginInfo]:
        info = self.plugins.get(name)
        if info is None or not info.enabled:
            return None
        return info

    def list_plugins(self) -> list[dict]:
        return [info.to_dict() for info in self.plugins.values()]

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        info = self.plugins.get(name)
        if info is None:
            return False
        info.enabled = enabled
        logger.info("Plugin toggled", plugin=name, enabled=enabled)
        return True

    def discover(self) -> dict[str, PluginInfo]:
        """Load plugins exposed through the entry point group."""
        for ep in importlib.metadata.entry_points(group=self.ENTRY_POINT_GROUP):
            try:
                target = ep.load()
                info = self._from_target(ep.name, target)
                if ep.dist is not None and info.version == "0.0.0":
                    info.version = ep.dist.version
            except Exception as e:
                logger.warning("Failed to load plugin entry point", plugin=ep.name, error=str(e))
                info = PluginInfo(ep.name, source="entrypoint")
                info.enabled = False
                info.errors.append(str(e))
            self.plugins[ep.name] = info

        logger.info("Plugin discovery complete", plugins=len(self.plugins))
        return self.plugins

    @staticmethod
    def _from_target(name: str, target: Any) -> PluginInfo:
        if isinstance(target, dict):
            actions = target
            version, description = "0.0.0", ""
        else:
            actions = getattr(target, "actions", None)
            if not isinstance(actions, dict):
                raise TypeError(f"Plugin {name} exposes no actions mapping")
            version = getattr(target, "version", "0.0.0")
            description = getattr(target, "description", "")
        return PluginInfo(
            name,
            actions,
            version=version,
            description=description,
            source="entrypoint",
        )
