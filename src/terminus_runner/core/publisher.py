"""
Screen publishing.

Each plugin owns exactly one live screen per device, named
``{plugin}_{device friendly id}_{suffix}``. Publishing replaces the previous
screen and attaches the new one to the device playlist.
"""

import logging
import re
import threading
import time
from typing import Callable, Dict, List

from .terminus import DeviceInfo, Screen, TerminusClient

log = logging.getLogger(__name__)

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"

# Generation suffix appended to the stable prefix, see _next_suffix()
_SUFFIX_PATTERN = "(?:_[0-9a-z]+)?"


def to_base36(value: int) -> str:
    """Lowercase base-36 representation of a non-negative integer."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_DIGITS[remainder])
    return "".join(reversed(digits))


class ScreenPublisher:
    """
    Replaces and publishes plugin screens for one device.

    Calls for different plugins may run concurrently; their name prefixes are
    disjoint. Calls for the same plugin are serialized.
    """

    def __init__(
        self,
        client: TerminusClient,
        device: DeviceInfo,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.device = device
        self._clock = clock
        self._last_stamp = 0
        self._stamp_lock = threading.Lock()
        self._plugin_locks: Dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def screen_prefix(self, plugin_name: str) -> str:
        """Stable name shared by every generation of a plugin's screen."""
        return f"{plugin_name}_{self.device.friendly_id}"

    def owns(self, plugin_name: str, screen: Screen) -> bool:
        """
        True if the screen is a generation of this plugin's screen.

        The suffix must be a single base-36 token, so a plugin never claims the
        screens of another plugin whose name extends its prefix.
        """
        pattern = re.escape(self.screen_prefix(plugin_name)) + _SUFFIX_PATTERN
        return re.fullmatch(pattern, screen.name) is not None

    def _next_suffix(self) -> str:
        # Strictly increasing within the process, even within one millisecond
        with self._stamp_lock:
            stamp = max(int(self._clock() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
        return to_base36(stamp)

    def _lock_for(self, plugin_name: str) -> threading.Lock:
        with self._locks_lock:
            return self._plugin_locks.setdefault(plugin_name, threading.Lock())

    def remove_previous(self, plugin_name: str) -> List[int]:
        """Delete every screen carrying the plugin's stable prefix."""
        removed = []
        for screen in self.client.get_screens():
            if self.owns(plugin_name, screen):
                self.client.remove_screen(screen.id)
                removed.append(screen.id)
        if removed:
            log.debug(f"Removed {len(removed)} old screen(s) for '{plugin_name}': {removed}")
        return removed

    def publish(self, plugin_name: str, image_b64: str) -> int:
        """
        Publish a rendered image as the plugin's only screen.

        Args:
            plugin_name: Plugin that produced the image
            image_b64: Base64 encoded PNG

        Returns:
            Id of the new screen
        """
        with self._lock_for(plugin_name):
            self.remove_previous(plugin_name)

            name = f"{self.screen_prefix(plugin_name)}_{self._next_suffix()}"
            screen_id = self.client.add_screen(
                image_b64,
                name,
                label=name,
                filename=f"{name}.png",
                model_id=self.device.model_id,
            )
            self.client.add_screen_to_playlist(self.device.playlist_id, screen_id)

        log.info(f"Published screen '{name}' (id={screen_id}) for plugin '{plugin_name}'")
        return screen_id
