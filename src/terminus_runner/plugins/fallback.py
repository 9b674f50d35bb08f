"""
Fallback error image.

When a plugin fails to render, the device shows this image instead so the
failure is visible without reading logs. Producing it must never fail.
"""

import io
import logging
from typing import List

from PIL import Image, ImageDraw, ImageFont

from .fonts import default_font

log = logging.getLogger(__name__)

BANNER_COLOR = (0, 0, 0)
BANNER_TEXT_COLOR = (255, 255, 255)
TEXT_COLOR = (0, 0, 0)
BACKGROUND = (255, 255, 255)

MAX_ERROR_LINES = 8
ELLIPSIS = "..."


def encode_png(image: Image.Image) -> bytes:
    """Encode an image as PNG bytes."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


_BLANK_PNG = encode_png(Image.new("1", (1, 1), 1))


def describe_error(error: BaseException) -> str:
    """Short, single-line description of an exception."""
    name = type(error).__name__
    try:
        message = " ".join(str(error).split())
    except Exception:
        log.debug(f"Could not format {name} for display", exc_info=True)
        message = ""
    return f"{name}: {message}" if message else name


def _text_width(draw: ImageDraw.ImageDraw, text: str, font) -> float:
    return draw.textlength(text, font=font)


def _line_height(draw: ImageDraw.ImageDraw, font) -> int:
    bbox = draw.textbbox((0, 0), "Ag|", font=font)
    return (bbox[3] - bbox[1]) + 4


def ellipsize(
    draw: ImageDraw.ImageDraw, text: str, font, max_width: float, force: bool = False
) -> str:
    """
    Shorten text to fit max_width, ending in an ellipsis when cut.

    With force=True the ellipsis is appended even if the text already fits.
    """
    if not force and _text_width(draw, text, font) <= max_width:
        return text
    text = text.rstrip()
    while text and _text_width(draw, text + ELLIPSIS, font) > max_width:
        text = text[:-1]
    return text + ELLIPSIS


def wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: float) -> List[str]:
    """Greedy word wrap by rendered width. Overlong words are split."""
    lines: List[str] = []
    current = ""

    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if _text_width(draw, candidate, font) <= max_width:
            current = candidate
            continue

        if current:
            lines.append(current)
            current = ""

        # Word alone is too wide - break it into chunks
        while _text_width(draw, word, font) > max_width and len(word) > 1:
            cut = len(word) - 1
            while cut > 1 and _text_width(draw, word[:cut], font) > max_width:
                cut -= 1
            lines.append(word[:cut])
            word = word[cut:]
        current = word

    if current:
        lines.append(current)
    return lines


def layout_error_text(
    draw: ImageDraw.ImageDraw,
    text: str,
    font,
    max_width: float,
    max_lines: int,
) -> List[str]:
    """Wrap text and cap it at max_lines, marking truncation with an ellipsis."""
    if max_lines <= 0:
        return []

    lines = wrap_text(draw, text, font, max_width)
    if len(lines) > max_lines:
        lines = lines[:max_lines]
        lines[-1] = ellipsize(draw, lines[-1], font, max_width, force=True)
    return lines


def render_error_image(
    width: int,
    height: int,
    plugin_name: str,
    error: BaseException,
    font_size: int = 0,
) -> Image.Image:
    """Draw a banner with the plugin name followed by the error description."""
    width, height = max(1, width), max(1, height)
    image = Image.new("RGB", (width, height), BACKGROUND)
    draw = ImageDraw.Draw(image)

    font: ImageFont.ImageFont = default_font(font_size or max(10, min(24, height // 20)))
    padding = max(2, min(width, height) // 40)
    line_height = _line_height(draw, font)
    text_width = max(1, width - 2 * padding)

    banner_height = min(height, line_height + 2 * padding)
    draw.rectangle([0, 0, width - 1, banner_height - 1], fill=BANNER_COLOR)
    title = ellipsize(draw, f"Plugin '{plugin_name}' failed", font, text_width)
    draw.text((padding, padding), title, fill=BANNER_TEXT_COLOR, font=font)

    available = (height - banner_height - padding) // line_height
    lines = layout_error_text(
        draw,
        describe_error(error),
        font,
        text_width,
        min(MAX_ERROR_LINES, available),
    )

    y = banner_height + padding
    for line in lines:
        draw.text((padding, y), line, fill=TEXT_COLOR, font=font)
        y += line_height

    return image


def fallback_png(width: int, height: int, plugin_name: str, error: BaseException) -> bytes:
    """
    Encoded error image for a failed render.

    Degrades to a bare banner, then to a blank pixel, rather than raising.
    """
    try:
        return encode_png(render_error_image(width, height, plugin_name, error))
    except Exception:
        log.exception(f"Failed to draw error image for plugin '{plugin_name}'")

    try:
        image = Image.new("RGB", (max(1, width), max(1, height)), BACKGROUND)
        banner = [0, 0, image.width - 1, min(image.height, 40) - 1]
        ImageDraw.Draw(image).rectangle(banner, fill=BANNER_COLOR)
        return encode_png(image)
    except Exception:
        log.exception(f"Failed to draw error banner for plugin '{plugin_name}'")

    return _BLANK_PNG
