"""
Clock plugin

Large time and date, centered on the canvas.
"""

import zoneinfo
from datetime import datetime

from PIL import Image, ImageDraw

from terminus_runner.plugins.base import BasePlugin
from terminus_runner.plugins.fonts import get_font

FOREGROUND = (0, 0, 0)


class Plugin(BasePlugin):
    """Simple digital clock display."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.timezone = self.config.get("timezone", "UTC")
        self.title = self.config.get("title", "")
        self._time_font = None
        self._small_font = None

    def on_start(self) -> None:
        """Validate the timezone and load fonts."""
        zoneinfo.ZoneInfo(self.timezone)

        # Sized relative to the panel when not configured
        size = self.config.get("font_size") or max(24, self.height // 4)
        font_path = self.config.get("font_path")
        self._time_font = get_font(font_path, size)
        self._small_font = get_font(font_path, max(12, size // 4))
        self.log(f"Clock started for {self.timezone}", "info")

    def _centered(self, draw: ImageDraw.ImageDraw, y: int, text: str, font) -> int:
        bbox = draw.textbbox((0, 0), text, font=font)
        text_width = bbox[2] - bbox[0]
        text_height = bbox[3] - bbox[1]
        draw.text(((self.width - text_width) // 2, y), text, fill=FOREGROUND, font=font)
        return text_height

    def draw(self, image: Image.Image, draw: ImageDraw.ImageDraw) -> None:
        if self._time_font is None:
            self.on_start()

        now = datetime.now(zoneinfo.ZoneInfo(self.timezone))
        time_str = now.strftime("%H:%M")
        date_str = now.strftime("%A, %d %B %Y")

        bbox = draw.textbbox((0, 0), time_str, font=self._time_font)
        time_height = bbox[3] - bbox[1]
        y = (self.height - time_height) // 2

        if self.title:
            self._centered(draw, max(4, y // 3), self.title, self._small_font)
        self._centered(draw, y, time_str, self._time_font)
        self._centered(draw, y + time_height + 16, date_str, self._small_font)

        draw.line((16, self.height - 24, self.width - 16, self.height - 24), fill=FOREGROUND)
