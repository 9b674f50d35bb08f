"""
Plugin discovery and loading.

Every immediate subdirectory of the plugin root is a plugin:

    plugins/
        calendar/
            config.json   {"enabled": true, "config": {...}}
            plugin.py     defines ``Plugin``, a BasePlugin subclass

The ``example`` directory is a template and is never loaded. Any malformed
plugin aborts startup before a single plugin runs.
"""

import importlib.util
import inspect
import json
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..core.errors import PluginError
from .base import BasePlugin

if TYPE_CHECKING:
    from ..core.terminus import DeviceInfo

log = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
ENTRY_POINT = "plugin.py"
PLUGIN_ATTRIBUTE = "Plugin"
RESERVED_NAMES = {"example", "__pycache__"}

DEFAULT_PLUGINS_DIR = Path(__file__).parent

PluginFactory = Callable[..., BasePlugin]


class StartFailurePolicy(Enum):
    """What happens to a plugin whose on_start() raises."""

    EXCLUDE = "exclude"  # dropped from scheduling
    DEGRADE = "degrade"  # kept, runs without whatever on_start failed to set up


@dataclass(frozen=True)
class PluginDescriptor:
    """A plugin found on disk."""

    name: str
    enabled: bool
    path: Path
    config: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def entry_point(self) -> Path:
        return self.path / ENTRY_POINT


class PluginRegistry:
    """
    Discovers, loads and owns plugin instances.

    Plugins are immutable for the process lifetime: there is no hot reload.
    """

    def __init__(
        self,
        plugins_dir: Optional[Path] = None,
        start_failure_policy: StartFailurePolicy = StartFailurePolicy.EXCLUDE,
    ):
        self.plugins_dir = Path(plugins_dir) if plugins_dir else DEFAULT_PLUGINS_DIR
        self.start_failure_policy = start_failure_policy

        # Name -> constructor table, filled from entry points or register()
        self.factories: Dict[str, PluginFactory] = {}

        self._plugins: List[BasePlugin] = []
        self._started: List[BasePlugin] = []
        self._excluded: List[str] = []

    @property
    def plugins(self) -> List[BasePlugin]:
        """All loaded plugins, in discovery order."""
        return list(self._plugins)

    @property
    def active_plugins(self) -> List[BasePlugin]:
        """Plugins eligible for rendering."""
        return [p for p in self._plugins if p.plugin_name not in self._excluded]

    @property
    def names(self) -> List[str]:
        """Names of the plugins eligible for rendering."""
        return [p.plugin_name for p in self.active_plugins]

    @property
    def excluded(self) -> List[str]:
        return list(self._excluded)

    def register(self, name: str, factory: PluginFactory) -> None:
        """Register a constructor for a plugin name."""
        if name in self.factories and self.factories[name] is not factory:
            raise PluginError(f"Plugin {name} is already registered", plugin_name=name)
        self.factories[name] = factory

    # Discovery

    def _read_config(self, name: str, config_path: Path) -> Dict[str, Any]:
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PluginError(
                f"Plugin {name} {CONFIG_FILE} is not valid JSON: {e}", plugin_name=name
            ) from e
        except OSError as e:
            raise PluginError(
                f"Plugin {name} {CONFIG_FILE} could not be read: {e}", plugin_name=name
            ) from e

        if not isinstance(raw, dict):
            raise PluginError(
                f"Plugin {name} {CONFIG_FILE} must be a JSON object", plugin_name=name
            )
        return raw

    def discover(self) -> List[PluginDescriptor]:
        """
        Scan the plugin root and validate every plugin directory.

        Raises:
            PluginError: If any plugin directory is malformed
        """
        if not self.plugins_dir.is_dir():
            raise PluginError(f"Plugin directory not found: {self.plugins_dir}")

        descriptors = []
        for plugin_dir in sorted(self.plugins_dir.iterdir()):
            name = plugin_dir.name
            if not plugin_dir.is_dir() or name in RESERVED_NAMES or name[0] in "._":
                continue

            config_path = plugin_dir / CONFIG_FILE
            if not config_path.is_file():
                raise PluginError(f"Plugin {name} is missing {CONFIG_FILE} file", plugin_name=name)
            if not (plugin_dir / ENTRY_POINT).is_file():
                raise PluginError(f"Plugin {name} is missing {ENTRY_POINT} file", plugin_name=name)

            raw = self._read_config(name, config_path)

            if "enabled" not in raw:
                raise PluginError(
                    f"Plugin {name} {CONFIG_FILE} is missing the 'enabled' property",
                    plugin_name=name,
                )
            if not isinstance(raw["enabled"], bool):
                raise PluginError(
                    f"Plugin {name} {CONFIG_FILE} 'enabled' must be true or false",
                    plugin_name=name,
                )

            if raw["enabled"] is False:
                log.info(f"Plugin {name} is disabled in {CONFIG_FILE}")
                continue

            if "config" not in raw:
                raise PluginError(
                    f"Plugin {name} {CONFIG_FILE} is missing the 'config' property",
                    plugin_name=name,
                )
            if not isinstance(raw["config"], dict):
                raise PluginError(
                    f"Plugin {name} {CONFIG_FILE} 'config' must be a JSON object",
                    plugin_name=name,
                )

            descriptors.append(
                PluginDescriptor(name=name, enabled=True, path=plugin_dir, config=raw["config"])
            )

        log.info(f"Discovered {len(descriptors)} enabled plugin(s) in {self.plugins_dir}")
        return descriptors

    # Loading

    def _import_entry_point(self, descriptor: PluginDescriptor) -> Any:
        # Plugin classes resolve their module through sys.modules (dataclasses, pickle)
        module_name = f"terminus_runner_plugin_{descriptor.name.replace('-', '_')}"
        spec = importlib.util.spec_from_file_location(module_name, descriptor.entry_point)
        if spec is None or spec.loader is None:
            raise PluginError(
                f"Could not create module spec for {descriptor.entry_point}",
                plugin_name=descriptor.name,
            )

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginError(
                f"Plugin {descriptor.name} {ENTRY_POINT} failed to import: {e}",
                plugin_name=descriptor.name,
            ) from e
        return module

    def _resolve_factory(self, descriptor: PluginDescriptor) -> PluginFactory:
        name = descriptor.name
        if name in self.factories:
            return self.factories[name]

        module = self._import_entry_point(descriptor)
        plugin_class = getattr(module, PLUGIN_ATTRIBUTE, None)

        if not isinstance(plugin_class, type) or not issubclass(plugin_class, BasePlugin):
            raise PluginError(
                f"Plugin {name} {ENTRY_POINT} must define '{PLUGIN_ATTRIBUTE}', "
                "a subclass of BasePlugin",
                plugin_name=name,
            )
        if inspect.isabstract(plugin_class):
            raise PluginError(
                f"Plugin {name} class {plugin_class.__name__} does not implement draw()",
                plugin_name=name,
            )

        self.register(name, plugin_class)
        return plugin_class

    def load(self, descriptor: PluginDescriptor, device: "DeviceInfo") -> BasePlugin:
        """Instantiate one plugin at the device's canvas size."""
        factory = self._resolve_factory(descriptor)
        try:
            plugin = factory(
                plugin_name=descriptor.name,
                width=device.width,
                height=device.height,
                config=descriptor.config,
                device=device,
            )
        except Exception as e:
            raise PluginError(
                f"Failed to instantiate plugin {descriptor.name}: {e}",
                plugin_name=descriptor.name,
            ) from e

        if not isinstance(plugin, BasePlugin):
            raise PluginError(
                f"Plugin {descriptor.name} factory returned {type(plugin).__name__}, "
                "not a BasePlugin",
                plugin_name=descriptor.name,
            )

        log.info(f"Loaded plugin '{descriptor.name}' ({device.width}x{device.height})")
        return plugin

    def load_all(self, device: "DeviceInfo") -> List[BasePlugin]:
        """
        Discover and load every enabled plugin.

        Nothing is kept if any plugin fails, so a partial plugin set is never
        scheduled.
        """
        loaded = [self.load(descriptor, device) for descriptor in self.discover()]
        self._plugins = loaded
        return self.plugins

    # Lifecycle

    def start(self) -> None:
        """Call on_start() on every plugin, in discovery order."""
        for plugin in self._plugins:
            try:
                plugin.on_start()
            except Exception as e:
                log.exception(f"Plugin '{plugin.plugin_name}' failed to start: {e}")
                if self.start_failure_policy is StartFailurePolicy.EXCLUDE:
                    self._excluded.append(plugin.plugin_name)
                    log.warning(f"Plugin '{plugin.plugin_name}' excluded from scheduling")
                    continue
                log.warning(f"Plugin '{plugin.plugin_name}' will run without its resources")

            self._started.append(plugin)
            plugin.log("Plugin started", "info")

    def stop(self) -> None:
        """Call on_stop() on every started plugin, in reverse order."""
        while self._started:
            plugin = self._started.pop()
            try:
                plugin.on_stop()
            except Exception as e:
                log.exception(f"Plugin '{plugin.plugin_name}' failed to stop: {e}")
