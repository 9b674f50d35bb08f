"""
Base plugin class for Terminus runner plugins.

All plugins must inherit from BasePlugin and implement draw().
"""

import base64
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from PIL import Image, ImageDraw

from .fallback import BACKGROUND, describe_error, encode_png, fallback_png

if TYPE_CHECKING:
    from ..core.terminus import DeviceInfo

log = logging.getLogger(__name__)


@dataclass
class RenderResult:
    """Outcome of one render of one plugin."""

    plugin_name: str
    image: str  # base64 PNG, always decodable
    ok: bool = True
    error: Optional[str] = None
    duration: float = 0.0
    finished_at: float = field(default_factory=time.time)


class BasePlugin(ABC):
    """
    Base class for all plugins.

    A plugin paints one image per render cycle onto a white canvas whose size
    is fixed when the plugin is loaded. It never talks to the device or the
    Terminus server; the runtime publishes whatever it renders.

    Lifecycle:
        1. __init__() - Called once when the plugin is loaded
        2. on_start() - Called once before the first render
        3. draw() - Called on every render cycle
        4. on_stop() - Called at shutdown

    Example:
        class Plugin(BasePlugin):
            def draw(self, image, draw):
                draw.text((10, 10), self.config["greeting"], fill=(0, 0, 0))
    """

    def __init__(
        self,
        plugin_name: str,
        width: int,
        height: int,
        config: Optional[Dict[str, Any]] = None,
        device: Optional["DeviceInfo"] = None,
    ):
        self.plugin_name = plugin_name
        self._width = width
        self._height = height
        self.config = config if config is not None else {}
        self.device = device
        self.last_result: Optional[RenderResult] = None
        self.last_error: Optional[str] = None
        self.logger = logging.getLogger(f"{__package__}.{plugin_name}")

    @property
    def width(self) -> int:
        """Canvas width in pixels."""
        return self._width

    @property
    def height(self) -> int:
        """Canvas height in pixels."""
        return self._height

    def on_start(self) -> None:
        """
        Called once when the runtime starts.

        Override to set up clients or other resources.
        """

    def on_stop(self) -> None:
        """
        Called once when the runtime stops.

        Override to perform cleanup.
        """

    @abstractmethod
    def draw(self, image: Image.Image, draw: ImageDraw.ImageDraw) -> None:
        """
        Paint the plugin's content.

        The canvas is already filled with white.
        Must be implemented by subclasses.
        """

    def render(self) -> Image.Image:
        """Render to a fresh canvas. Exceptions from draw() propagate."""
        image = Image.new("RGB", (self.width, self.height), BACKGROUND)
        self.draw(image, ImageDraw.Draw(image))
        return image

    def render_to_png(self) -> bytes:
        """Render to PNG bytes, substituting an error image if draw() fails."""
        try:
            png = encode_png(self.render())
        except Exception as e:
            self.last_error = describe_error(e)
            self.log(f"Render failed: {self.last_error}", "error")
            log.debug("Render traceback for plugin '%s'", self.plugin_name, exc_info=True)
            return fallback_png(self.width, self.height, self.plugin_name, e)

        self.last_error = None
        return png

    def render_to_base64(self) -> str:
        """Render to a base64 encoded PNG."""
        return base64.b64encode(self.render_to_png()).decode("ascii")

    def log(self, message: str, level: str = "info") -> None:
        """Log a message tagged with this plugin's name."""
        log_fn = getattr(self.logger, level.lower(), self.logger.info)
        log_fn(f"[{self.plugin_name}] {message}")

    def __getstate__(self):
        """Custom pickle support - loggers are recreated on unpickle."""
        state = self.__dict__.copy()
        state.pop("logger", None)
        return state

    def __setstate__(self, state):
        """Custom unpickle support."""
        self.__dict__.update(state)
        self.logger = logging.getLogger(f"{__package__}.{self.plugin_name}")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.plugin_name} {self.width}x{self.height}>"
