"""
Font utilities for plugins.

Bitmap (BDF) fonts suit small e-ink panels; TrueType fonts scale for large
ones. Loaded fonts are cached for the life of the process.
"""

import logging
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple

from PIL import BdfFontFile, ImageFont

log = logging.getLogger(__name__)

# Keyed by (path, size); size is 0 for bitmap fonts
_font_cache: Dict[Tuple[str, int], ImageFont.ImageFont] = {}

PIL_FONT_DIR = Path(tempfile.gettempdir()) / "terminus_runner_fonts"


def _compiled_path(bdf_path: Path) -> Path:
    # Includes the source mtime so an edited BDF file is converted again
    stamp = int(bdf_path.stat().st_mtime)
    return PIL_FONT_DIR / f"{bdf_path.stem}-{stamp}.pil"


def load_bdf_font(bdf_path: str) -> ImageFont.ImageFont:
    """
    Load a BDF bitmap font.

    Pillow only reads its own .pil format, so the BDF file is compiled once
    into a temp directory and reused afterwards.
    """
    key = (bdf_path, 0)
    if key in _font_cache:
        return _font_cache[key]

    source = Path(bdf_path)
    try:
        compiled = _compiled_path(source)
        if not compiled.exists():
            log.info(f"Compiling BDF font {source} -> {compiled}")
            PIL_FONT_DIR.mkdir(parents=True, exist_ok=True)
            with source.open("rb") as fp:
                BdfFontFile.BdfFontFile(fp).save(str(compiled))
        font = ImageFont.load(str(compiled))
    except Exception as e:
        log.warning(f"Failed to load BDF font {source}: {e}")
        raise

    _font_cache[key] = font
    return font


def load_truetype_font(path: str, size: int) -> ImageFont.FreeTypeFont:
    """Load a TrueType/OpenType font at the given size."""
    key = (path, size)
    if key not in _font_cache:
        _font_cache[key] = ImageFont.truetype(path, size)
    return _font_cache[key]


def default_font(size: int = 16) -> ImageFont.ImageFont:
    """
    Pillow's bundled font.

    Scalable when Pillow was built with FreeType, the fixed bitmap font otherwise.
    """
    key = ("<default>", size)
    if key not in _font_cache:
        try:
            _font_cache[key] = ImageFont.load_default(size=size)
        except (ImportError, OSError, TypeError):
            _font_cache[key] = ImageFont.load_default()
    return _font_cache[key]


def get_font(font_path: Optional[str] = None, size: int = 16) -> ImageFont.ImageFont:
    """
    Load a font by path.

    Args:
        font_path: Path to a .bdf, .ttf or .otf file, or None for the default font
        size: Point size for scalable fonts (ignored for BDF)

    Returns:
        Loaded font object
    """
    if font_path is None:
        return default_font(size)
    if font_path.lower().endswith(".bdf"):
        return load_bdf_font(font_path)
    return load_truetype_font(font_path, size)
