"""
Terminus runner kernel.

Orchestrates the Terminus client, plugins, sandbox, publisher and refresh
coordinator. Startup validates everything before a single plugin runs; after
that, plugin failures only ever cost that plugin's screen.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Dict, Optional

from ..plugins.registry import PluginRegistry, StartFailurePolicy
from .config import MIN_REFRESH_RATE, SystemConfig
from .coordinator import Clock, RefreshCoordinator
from .errors import StartupError, TerminusError
from .publisher import ScreenPublisher
from .sandbox import Sandbox
from .terminus import DeviceInfo, TerminusClient

if TYPE_CHECKING:
    from ..plugins.base import BasePlugin

log = logging.getLogger(__name__)


class Kernel:
    """
    The Terminus runner kernel.

    Responsibilities:
    - Identify the managed device and its canvas size
    - Load and start plugins
    - Render and publish every plugin on demand
    - Run the refresh coordinator until stopped
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        client: Optional[TerminusClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or SystemConfig()

        try:
            policy = StartFailurePolicy(self.config.start_failure_policy)
            self.sandbox = Sandbox(self.config.sandbox)
        except ValueError as e:
            raise StartupError(f"Invalid configuration: {e}") from e

        self.client = client or TerminusClient(self.config.client)
        self.registry = PluginRegistry(self.config.plugins_dir, start_failure_policy=policy)
        self.coordinator = RefreshCoordinator(
            self.client,
            self.config.device_id,
            self.refresh_all,
            self.config.coordinator,
            clock=clock,
        )

        self.device: Optional[DeviceInfo] = None
        self.publisher: Optional[ScreenPublisher] = None

        self._stop_requested = threading.Event()
        self._shut_down = False

    def identify_device(self) -> DeviceInfo:
        """
        Fetch the managed device and its model.

        Raises:
            StartupError: If the device is unreachable or refreshes too fast
        """
        device_id = self.config.device_id
        try:
            device = self.client.get_device(device_id)
            model = self.client.get_model(device.model_id)
        except TerminusError as e:
            raise StartupError(f"Could not identify device {device_id}: {e}") from e

        if device.refresh_rate < MIN_REFRESH_RATE:
            raise StartupError(
                f"Device refresh rate ({device.refresh_rate}s) is less than "
                f"{MIN_REFRESH_RATE} seconds - not supported"
            )

        self.device = DeviceInfo.from_records(device, model)
        self.publisher = ScreenPublisher(self.client, self.device)
        log.info(
            f"Managing device {self.device.friendly_id} (id={self.device.id}, "
            f"{self.device.width}x{self.device.height}, refresh every {device.refresh_rate}s)"
        )
        return self.device

    def load_plugins(self) -> None:
        """Load every enabled plugin and run its on_start()."""
        if self.device is None:
            raise StartupError("Device must be identified before loading plugins")

        self.registry.load_all(self.device)
        self.registry.start()

        names = self.registry.names
        log.info(f"Active plugins: {', '.join(names) if names else 'none'}")

    def _refresh_plugin(self, plugin: "BasePlugin") -> Optional[int]:
        result = self.sandbox.render(plugin)
        try:
            return self.publisher.publish(plugin.plugin_name, result.image)
        except Exception as e:
            log.error(f"Failed to publish plugin '{plugin.plugin_name}': {e}")
            return None

    def refresh_all(self, reason: str = "") -> Dict[str, Optional[int]]:
        """
        Render and publish every active plugin concurrently.

        Returns:
            Plugin name -> new screen id, or None where publishing failed
        """
        plugins = self.registry.active_plugins
        if not plugins:
            log.warning("No active plugins to refresh")
            return {}
        if self.publisher is None:
            raise StartupError("Device must be identified before refreshing plugins")

        log.info(f"Refreshing {len(plugins)} plugin(s): {reason or 'on request'}")

        results: Dict[str, Optional[int]] = {}
        workers = max(1, min(self.config.sandbox.max_workers, len(plugins)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="refresh") as pool:
            futures = {pool.submit(self._refresh_plugin, p): p.plugin_name for p in plugins}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception:
                    log.exception(f"Refresh of plugin '{name}' failed")
                    results[name] = None

        published = sum(1 for screen_id in results.values() if screen_id is not None)
        log.info(f"Refresh complete: {published}/{len(plugins)} screen(s) published")
        return results

    def start(self) -> None:
        """Identify the device, start plugins and publish an initial set of screens."""
        log.info("Starting Terminus runner kernel...")
        self.identify_device()
        self.load_plugins()
        self.refresh_all("Initial render")
        log.info("Terminus runner kernel started")

    def run(self) -> None:
        """
        Start and run the refresh coordinator until stop() is called.

        Raises:
            StartupError: If startup validation fails
            CoordinatorError: On a fatal coordinator error
        """
        try:
            self.start()
            if not self._stop_requested.is_set():
                self.coordinator.run()
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Request a graceful stop. Safe to call from a signal handler."""
        if not self._stop_requested.is_set():
            log.info("Stop requested")
        self._stop_requested.set()
        self.coordinator.stop()

    def shutdown(self) -> None:
        """Stop plugins and release resources. Runs once."""
        if self._shut_down:
            return
        self._shut_down = True

        log.info("Stopping Terminus runner kernel...")
        self.registry.stop()
        self.sandbox.shutdown()
        self.client.close()
        log.info("Terminus runner kernel stopped")
