"""Downscaling and mode fixes applied before encoding."""
import logging
from typing import Tuple

from PIL import Image

logger = logging.getLogger("optimizer.resize")

WHITE = (255, 255, 255)


def fit_within(img: Image.Image, max_dimension: int) -> Image.Image:
    """
    Scale image so its longest edge is at most max_dimension, keeping aspect ratio.
    Smaller images are returned unchanged (never upscaled).
    """
    w, h = img.size
    longest = max(w, h)
    if longest <= max_dimension:
        return img
    scale = max_dimension / longest
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    logger.debug("Downscaling %sx%s -> %sx%s", w, h, new_w, new_h)
    return img.resize((new_w, new_h), Image.Resampling.LANCZOS)


def has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def flatten_alpha(img: Image.Image, fill_color: Tuple[int, int, int] = WHITE) -> Image.Image:
    """Composite transparent pixels onto fill_color and return an RGB image."""
    if not has_alpha(img):
        return img if img.mode == "RGB" else img.convert("RGB")
    rgba = img.convert("RGBA")
    out = Image.new("RGB", rgba.size, fill_color)
    out.paste(rgba, mask=rgba.getchannel("A"))
    return out


def normalize_mode(img: Image.Image, keep_alpha: bool) -> Image.Image:
    """RGB or RGBA, which every target encoder accepts."""
    if keep_alpha and has_alpha(img):
        return img if img.mode == "RGBA" else img.convert("RGBA")
    return flatten_alpha(img)
