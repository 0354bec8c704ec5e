"""Predicts how much a file can shrink without converting it.

The prediction is a pair of buckets. ``image_density`` classifies how much
of the file's weight is image data; ``estimated_savings`` is derived from
that bucket and the "already optimized" flag by :func:`estimate_savings`,
a pure function of those two inputs. Thresholds live in
:class:`AnalysisThresholds` and default to the values in ``optimizer.config``;
they are tunable guesses, not calibrated constants.
"""
import logging
import re
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import fitz
from PIL import Image
from pillow_heif import register_heif_opener

from optimizer import config
from optimizer.conversion.video import probe_video
from optimizer.errors import CodecFailure, UnreadableSource
from optimizer.formats import FileKind, FileReference, is_pdf
from optimizer.progress import CancellationToken, run_cancellable

register_heif_opener()

logger = logging.getLogger("optimizer.analysis")


class ImageDensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high"].index(self.value)


class SavingsLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def percent(self) -> int:
        """Illustrative percentage shown to the user."""
        return {"low": 25, "medium": 50, "high": 70}[self.value]

    @property
    def rank(self) -> int:
        return ["low", "medium", "high"].index(self.value)


@dataclass(frozen=True)
class AnalysisResult:
    page_count: Optional[int]
    image_count: int
    image_density: ImageDensity
    estimated_savings: SavingsLevel
    is_already_optimized: bool
    original_dpi: Optional[int] = None


@dataclass(frozen=True)
class AnalysisThresholds:
    density_low: float = config.DENSITY_LOW_THRESHOLD
    density_high: float = config.DENSITY_HIGH_THRESHOLD
    image_bpp_low: float = config.IMAGE_BPP_LOW
    image_bpp_high: float = config.IMAGE_BPP_HIGH
    video_bpp_low: float = config.VIDEO_BPP_LOW
    video_bpp_high: float = config.VIDEO_BPP_HIGH
    generic_high_bytes: int = config.GENERIC_HIGH_DENSITY_BYTES
    target_dpi: int = config.TARGET_OUTPUT_DPI


def bucket(value: float, low: float, high: float) -> ImageDensity:
    if value < low:
        return ImageDensity.LOW
    if value < high:
        return ImageDensity.MEDIUM
    return ImageDensity.HIGH


def is_already_optimized(density: ImageDensity, average_dpi: Optional[float], target_dpi: int) -> bool:
    """Low density and no resolution left to shed. Without a DPI, density alone decides."""
    if density is not ImageDensity.LOW:
        return False
    return average_dpi is None or average_dpi <= target_dpi


def estimate_savings(density: ImageDensity, already_optimized: bool) -> SavingsLevel:
    if already_optimized:
        return SavingsLevel.LOW
    if density is ImageDensity.HIGH:
        return SavingsLevel.HIGH
    if density is ImageDensity.MEDIUM:
        return SavingsLevel.MEDIUM
    return SavingsLevel.LOW


@dataclass
class _Measurement:
    page_count: Optional[int]
    image_count: int
    density: ImageDensity
    dpis: list[float] = field(default_factory=list)
    original_dpi: Optional[int] = None


# Parts of office containers that hold embedded pictures
_MEDIA_DIRS = ("/media/", "Pictures/", "Data/")
_SLIDE_RE = re.compile(r"^ppt/slides/slide\d+\.xml$")
_SHEET_RE = re.compile(r"^xl/worksheets/sheet\d+\.xml$")
_PAGES_RE = re.compile(rb"<Pages>(\d+)</Pages>")
_PLAIN_TEXT_EXTENSIONS = {".txt", ".csv", ".rtf"}


class AnalysisService:
    """Inspects a source file and predicts its compressibility. Never writes anything."""

    def __init__(self, thresholds: Optional[AnalysisThresholds] = None):
        self.thresholds = thresholds or AnalysisThresholds()

    async def analyze(self, ref: FileReference, token: Optional[CancellationToken] = None) -> AnalysisResult:
        """Run the analysis in a worker thread. Cancelling the caller stops the page walk."""
        token = token or CancellationToken()
        return await run_cancellable(token, self.analyze_sync, ref, token)

    def analyze_sync(self, ref: FileReference, token: Optional[CancellationToken] = None) -> AnalysisResult:
        token = token or CancellationToken()
        logger.info("Analyzing %s (%s, %s bytes)", ref.name, ref.kind.value, ref.size)
        if ref.kind is FileKind.UNKNOWN_BINARY:
            raise UnreadableSource(f"{ref.name} is not a document, image or video", str(ref.path))
        if ref.size == 0:
            raise UnreadableSource(f"{ref.name} is empty", str(ref.path))

        if ref.kind is FileKind.IMAGE:
            m = self._measure_image(ref)
        elif ref.kind is FileKind.VIDEO:
            m = self._measure_video(ref)
        elif ref.kind is FileKind.DOCUMENT and is_pdf(ref.path):
            m = self._measure_pdf(ref, token)
        else:
            m = self._measure_container(ref)

        average_dpi = sum(m.dpis) / len(m.dpis) if m.dpis else None
        optimized = is_already_optimized(m.density, average_dpi, self.thresholds.target_dpi)
        result = AnalysisResult(
            page_count=m.page_count,
            image_count=m.image_count,
            image_density=m.density,
            estimated_savings=estimate_savings(m.density, optimized),
            is_already_optimized=optimized,
            original_dpi=m.original_dpi,
        )
        logger.info("Analysis of %s: %s", ref.name, result)
        return result

    def _measure_pdf(self, ref: FileReference, token: CancellationToken) -> _Measurement:
        t = self.thresholds
        try:
            doc = fitz.open(ref.path)
        except (RuntimeError, ValueError) as e:
            raise UnreadableSource(f"{ref.name} is not a readable PDF: {e}", str(ref.path)) from e
        with doc:
            if doc.needs_pass:
                raise UnreadableSource(f"{ref.name} is password protected", str(ref.path))
            if doc.page_count == 0:
                raise UnreadableSource(f"{ref.name} has no pages", str(ref.path))
            image_bytes = 0
            # xref -> (pixel width, pixel height, dpi or None)
            images: dict[int, tuple[int, int, Optional[float]]] = {}
            for page in doc:
                token.raise_if_cancelled()
                for info in page.get_images(full=True):
                    xref, width, height = info[0], info[2], info[3]
                    if xref in images:
                        continue
                    image_bytes += len(doc.xref_stream_raw(xref) or b"")
                    images[xref] = (width, height, _placed_dpi(page, xref, width))
            page_count = doc.page_count

        ratio = min(1.0, image_bytes / ref.size)
        dpis = [dpi for _, _, dpi in images.values() if dpi]
        original_dpi = None
        if images:
            _, _, dpi = max(images.values(), key=lambda i: i[0] * i[1])
            if dpi:
                original_dpi = int(round(dpi))
        logger.debug("%s: %s images, %.1f%% image bytes", ref.name, len(images), ratio * 100)
        return _Measurement(
            page_count=page_count,
            image_count=len(images),
            density=bucket(ratio, t.density_low, t.density_high),
            dpis=dpis,
            original_dpi=original_dpi,
        )

    def _measure_image(self, ref: FileReference) -> _Measurement:
        t = self.thresholds
        try:
            with Image.open(ref.path) as img:
                width, height = img.size
                frames = getattr(img, "n_frames", 1)
                dpi_info = img.info.get("dpi")
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise UnreadableSource(f"{ref.name} is not a readable image: {e}", str(ref.path)) from e
        if width <= 0 or height <= 0:
            raise UnreadableSource(f"{ref.name} has no pixels", str(ref.path))
        bpp = ref.size * 8 / (width * height * frames)
        dpi = float(dpi_info[0]) if dpi_info and dpi_info[0] else float(config.DEFAULT_IMAGE_DPI)
        return _Measurement(
            page_count=1,
            image_count=frames,
            density=bucket(bpp, t.image_bpp_low, t.image_bpp_high),
            dpis=[dpi],
            original_dpi=int(round(dpi)),
        )

    def _measure_video(self, ref: FileReference) -> _Measurement:
        t = self.thresholds
        try:
            info = probe_video(ref.path)
        except CodecFailure as e:
            raise UnreadableSource(f"{ref.name} is not a readable video: {e.message}", str(ref.path)) from e
        bit_rate = info.bit_rate or (ref.size * 8 / info.duration if info.duration else 0)
        pixels_per_second = info.width * info.height * (info.fps or 30.0)
        bpp = bit_rate / pixels_per_second if pixels_per_second else 0.0
        return _Measurement(
            page_count=None,
            image_count=0,
            density=bucket(bpp, t.video_bpp_low, t.video_bpp_high),
        )

    def _measure_container(self, ref: FileReference) -> _Measurement:
        """Office and text documents, presentations and spreadsheets."""
        t = self.thresholds
        suffix = Path(ref.name).suffix.lower()
        if zipfile.is_zipfile(ref.path):
            try:
                with zipfile.ZipFile(ref.path) as zf:
                    entries = zf.infolist()
                    app_xml = zf.read("docProps/app.xml") if "docProps/app.xml" in zf.namelist() else b""
            except (OSError, zipfile.BadZipFile, NotImplementedError, RuntimeError) as e:
                raise UnreadableSource(f"{ref.name} is a damaged archive: {e}", str(ref.path)) from e
            media = [e for e in entries if not e.is_dir() and any(d in e.filename for d in _MEDIA_DIRS)]
            ratio = min(1.0, sum(e.compress_size for e in media) / ref.size)
            return _Measurement(
                page_count=_container_page_count(entries, app_xml),
                image_count=len(media),
                density=bucket(ratio, t.density_low, t.density_high),
            )
        if suffix in _PLAIN_TEXT_EXTENSIONS:
            return _Measurement(page_count=None, image_count=0, density=ImageDensity.LOW)
        if suffix in {".docx", ".pptx", ".xlsx", ".odt", ".odp", ".ods", ".pages", ".key", ".numbers"}:
            raise UnreadableSource(f"{ref.name} is not a valid {suffix[1:].upper()} file", str(ref.path))
        # Legacy binary office formats have no structure we can read
        high = ref.size > t.generic_high_bytes
        return _Measurement(
            page_count=None,
            image_count=0,
            density=ImageDensity.HIGH if high else ImageDensity.MEDIUM,
        )


def _placed_dpi(page, xref: int, pixel_width: int) -> Optional[float]:
    """Pixel width over rendered width in inches, for the first placement on ``page``."""
    rects = page.get_image_rects(xref)
    if not rects or rects[0].width <= 0:
        return None
    return pixel_width / (rects[0].width / 72.0)


def _container_page_count(entries, app_xml: bytes) -> Optional[int]:
    slides = sum(1 for e in entries if _SLIDE_RE.match(e.filename))
    if slides:
        return slides
    sheets = sum(1 for e in entries if _SHEET_RE.match(e.filename))
    if sheets:
        return sheets
    m = _PAGES_RE.search(app_xml)
    return int(m.group(1)) if m else None
