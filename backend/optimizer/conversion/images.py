"""Still-image decode and encode with Pillow (HEIC through pillow-heif)."""
import io
import logging
from pathlib import Path

from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

from optimizer.conversion.models import CodecOutput
from optimizer.conversion.resize import fit_within, normalize_mode
from optimizer.errors import CodecFailure
from optimizer.formats import ConversionFormat
from optimizer.options import ConversionOptions
from optimizer.progress import CancellationToken

register_heif_opener()

logger = logging.getLogger("optimizer.images")


def quality_percent(quality: float) -> int:
    return max(1, min(100, int(round(quality * 100))))


def load_image(path: Path) -> Image.Image:
    """Open, decode and apply EXIF orientation."""
    try:
        with Image.open(path) as img:
            img.load()
            return ImageOps.exif_transpose(img)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise CodecFailure(f"Could not decode image {path.name}: {e}", e) from e


def encode_image(img: Image.Image, target: ConversionFormat, quality: float) -> bytes:
    """Encode one frame. ``quality`` is ignored by the lossless targets (PNG, TIFF)."""
    q = quality_percent(quality)
    buf = io.BytesIO()
    try:
        if target is ConversionFormat.JPG:
            normalize_mode(img, keep_alpha=False).save(buf, format="JPEG", quality=q, optimize=True)
        elif target is ConversionFormat.WEBP:
            normalize_mode(img, keep_alpha=True).save(buf, format="WEBP", quality=q, method=4)
        elif target is ConversionFormat.HEIC:
            normalize_mode(img, keep_alpha=True).save(buf, format="HEIF", quality=q)
        elif target is ConversionFormat.PNG:
            normalize_mode(img, keep_alpha=True).save(buf, format="PNG", optimize=True)
        elif target is ConversionFormat.TIFF:
            normalize_mode(img, keep_alpha=True).save(buf, format="TIFF", compression="tiff_deflate")
        else:
            raise CodecFailure(f"{target.value.upper()} is not a still-image format")
    except (OSError, ValueError, KeyError) as e:
        raise CodecFailure(f"Could not encode {target.value.upper()}: {e}", e) from e
    return buf.getvalue()


def encode_multipage_tiff(pages: list[Image.Image]) -> bytes:
    buf = io.BytesIO()
    frames = [normalize_mode(p, keep_alpha=False) for p in pages]
    try:
        frames[0].save(buf, format="TIFF", compression="tiff_deflate", save_all=True, append_images=frames[1:])
    except (OSError, ValueError) as e:
        raise CodecFailure(f"Could not encode multi-page TIFF: {e}", e) from e
    return buf.getvalue()


def convert_image(
    src: Path,
    out_path: Path,
    target: ConversionFormat,
    options: ConversionOptions,
    token: CancellationToken,
) -> CodecOutput:
    img = load_image(src)
    token.raise_if_cancelled()
    work = fit_within(img, options.max_dimension)
    token.raise_if_cancelled()
    data = encode_image(work, target, options.quality)
    out_path.write_bytes(data)
    logger.info("Converted %s -> %s (%s bytes)", src.name, out_path.name, len(data))
    return CodecOutput(out_path)
