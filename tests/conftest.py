"""Shared test fixtures."""

import json
import threading
from datetime import datetime, timezone

import pytest

from terminus_runner.core.errors import TerminusError
from terminus_runner.core.terminus import Device, DeviceInfo, Model, Screen

# 2023-11-14T22:13:20Z, a whole second so ISO round trips are exact
T0 = 1_700_000_000_000


def iso(timestamp_ms):
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


def at(seconds):
    """Epoch milliseconds ``seconds`` after T0."""
    return T0 + int(seconds * 1000)


class FakeClock:
    """Coordinator clock that jumps forward instead of sleeping."""

    def __init__(self, start_ms=T0, stop_at_ms=None):
        self.now = start_ms
        self.stop_at = stop_at_ms
        self.sleeps = []

    def now_ms(self):
        return self.now

    def sleep(self, seconds, stop_event):
        if stop_event.is_set():
            return True
        self.sleeps.append(seconds)
        target = self.now + max(0, int(round(seconds * 1000)))
        if self.stop_at is not None and target >= self.stop_at:
            self.now = max(self.now, self.stop_at)
            return True
        self.now = target
        return False


class FakeDevice:
    """
    A TRMNL device that fetches on its own schedule.

    Each fetch hands the device the server's current refresh rate, which fixes
    when it fetches next. Fetches due while offline are skipped.
    """

    def __init__(self, clock, refresh_rate=300, last_fetch_ms=T0, offline=(), manual=()):
        self.clock = clock
        self.refresh_rate = refresh_rate
        self.last_fetch = last_fetch_ms
        self.handed_rate = refresh_rate
        self.next_fetch = last_fetch_ms + refresh_rate * 1000
        self.offline = list(offline)
        self.manual = sorted(manual)
        self.fetches = []

    def _is_offline(self, timestamp_ms):
        return any(start <= timestamp_ms < end for start, end in self.offline)

    def _fetch(self, timestamp_ms):
        self.last_fetch = timestamp_ms
        self.handed_rate = self.refresh_rate
        self.next_fetch = timestamp_ms + self.handed_rate * 1000
        self.fetches.append(timestamp_ms)

    def advance(self):
        now = self.clock.now_ms()
        while True:
            manual = bool(self.manual) and self.manual[0] < self.next_fetch
            upcoming = self.manual[0] if manual else self.next_fetch
            if upcoming > now:
                return

            if manual:
                self.manual.pop(0)
                if not self._is_offline(upcoming):
                    self._fetch(upcoming)
            elif self._is_offline(upcoming):
                self.next_fetch = upcoming + self.handed_rate * 1000
            else:
                self._fetch(upcoming)


class FakeTerminus:
    """In-memory stand-in for TerminusClient."""

    def __init__(self, device, width=800, height=480, rotation=0):
        self.device = device
        self.model = Model(id=1, width=width, height=height, rotation=rotation, name="og")
        self.playlist_id = 7
        self.friendly_id = "ABC123"

        self.polls = 0
        self.fail_polls = 0
        self.fail_updates = 0
        self.rate_updates = []

        self.screens = {}
        self.playlist = []
        self.fail_publish_for = set()
        self.closed = False
        self._next_screen_id = 1
        self._lock = threading.Lock()

    def get_device(self, device_id):
        self.device.advance()
        self.polls += 1
        if self.fail_polls:
            self.fail_polls -= 1
            raise TerminusError(f"Failed to get device {device_id}: connection refused")
        return Device(
            id=device_id,
            model_id=self.model.id,
            playlist_id=self.playlist_id,
            friendly_id=self.friendly_id,
            refresh_rate=self.device.refresh_rate,
            updated_at=iso(self.device.last_fetch),
            label="Kitchen",
        )

    def update_device(self, device_id, **fields):
        self.device.advance()
        if self.fail_updates:
            self.fail_updates -= 1
            raise TerminusError(f"Failed to update device {device_id}: timed out")
        self.rate_updates.append(fields["refresh_rate"])
        self.device.refresh_rate = fields["refresh_rate"]

    def get_model(self, model_id):
        return self.model

    def get_screens(self):
        with self._lock:
            return [Screen(id=i, name=name) for i, (name, _) in self.screens.items()]

    def add_screen(self, image_b64, name, label=None, filename=None, model_id=1):
        if any(name.startswith(prefix) for prefix in self.fail_publish_for):
            raise TerminusError(f"Failed to add screen {name}: 500 Server Error")
        with self._lock:
            screen_id = self._next_screen_id
            self._next_screen_id += 1
            self.screens[screen_id] = (name, image_b64)
            return screen_id

    def remove_screen(self, screen_id):
        with self._lock:
            self.screens.pop(screen_id, None)
            if screen_id in self.playlist:
                self.playlist.remove(screen_id)

    def add_screen_to_playlist(self, playlist_id, screen_id):
        with self._lock:
            self.playlist.append(screen_id)

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock(start_ms=at(10))


@pytest.fixture
def device(clock):
    return FakeDevice(clock)


@pytest.fixture
def terminus(device):
    return FakeTerminus(device)


@pytest.fixture
def device_info():
    return DeviceInfo(
        id=1,
        friendly_id="ABC123",
        model_id=1,
        playlist_id=7,
        width=800,
        height=480,
        label="Kitchen",
    )


GOOD_PLUGIN = """
from terminus_runner.plugins.base import BasePlugin


class Plugin(BasePlugin):
    def draw(self, image, draw):
        draw.rectangle((10, 10, 50, 50), fill=(0, 0, 0))
        draw.text((60, 10), str(self.config.get("greeting", "")), fill=(0, 0, 0))
"""

FAILING_PLUGIN = """
from terminus_runner.plugins.base import BasePlugin


class Plugin(BasePlugin):
    def draw(self, image, draw):
        raise RuntimeError("calendar API returned 503")
"""

START_FAILS_PLUGIN = """
from terminus_runner.plugins.base import BasePlugin


class Plugin(BasePlugin):
    def on_start(self):
        raise ConnectionError("token expired")

    def draw(self, image, draw):
        draw.text((10, 10), "degraded", fill=(0, 0, 0))
"""


@pytest.fixture
def make_plugin(tmp_path):
    """Create plugin directories under a temporary plugin root."""
    root = tmp_path / "plugins"
    root.mkdir()

    def _make(name, source=GOOD_PLUGIN, enabled=True, config=None, raw_config=None):
        plugin_dir = root / name
        plugin_dir.mkdir()
        if raw_config is None:
            raw_config = json.dumps({"enabled": enabled, "config": config or {}})
        if raw_config is not False:
            (plugin_dir / "config.json").write_text(raw_config)
        if source is not None:
            (plugin_dir / "plugin.py").write_text(source)
        return plugin_dir

    _make.root = root
    return _make
