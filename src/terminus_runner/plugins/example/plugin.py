"""
Example plugin

Template for new plugins: copy this directory, rename it and set
"enabled": true in config.json. This directory itself is never loaded.
"""

from PIL import Image, ImageDraw

from terminus_runner.plugins.base import BasePlugin


class Plugin(BasePlugin):
    def on_start(self) -> None:
        self.log("Example plugin started", "info")

    def draw(self, image: Image.Image, draw: ImageDraw.ImageDraw) -> None:
        # Drawing logic goes here; the canvas is white and self.width x self.height
        draw.text((10, 10), str(self.config.get("config1", "")), fill=(0, 0, 0))
