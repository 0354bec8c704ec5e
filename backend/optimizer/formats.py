"""Input kinds, output formats, and which formats are reachable from which kind."""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

import fitz
from magika import Magika

from optimizer import config

logger = logging.getLogger("optimizer.formats")


class FileKind(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    VIDEO = "video"
    PRESENTATION = "presentation"
    SPREADSHEET = "spreadsheet"
    UNKNOWN_BINARY = "unknown_binary"


class FormatCategory(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    VIDEO = "video"


class ConversionFormat(str, Enum):
    PDF = "pdf"
    PNG = "png"
    JPG = "jpg"
    HEIC = "heic"
    TIFF = "tiff"
    WEBP = "webp"
    MP4 = "mp4"
    MOV = "mov"
    GIF = "gif"

    @property
    def category(self) -> FormatCategory:
        if self is ConversionFormat.PDF:
            return FormatCategory.DOCUMENT
        if self in (ConversionFormat.MP4, ConversionFormat.MOV):
            return FormatCategory.VIDEO
        return FormatCategory.IMAGE

    @property
    def extension(self) -> str:
        return self.value

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES[self]

    @property
    def lossy(self) -> bool:
        """True when ``quality`` changes the encoded output."""
        return self in (ConversionFormat.JPG, ConversionFormat.WEBP, ConversionFormat.HEIC)

    @property
    def supports_multi_page(self) -> bool:
        return self in (ConversionFormat.PDF, ConversionFormat.TIFF)

    def is_reachable_from(self, kind: FileKind) -> bool:
        return self in _REACHABLE[kind]


_MEDIA_TYPES = {
    ConversionFormat.PDF: "application/pdf",
    ConversionFormat.PNG: "image/png",
    ConversionFormat.JPG: "image/jpeg",
    ConversionFormat.HEIC: "image/heic",
    ConversionFormat.TIFF: "image/tiff",
    ConversionFormat.WEBP: "image/webp",
    ConversionFormat.MP4: "video/mp4",
    ConversionFormat.MOV: "video/quicktime",
    ConversionFormat.GIF: "image/gif",
}

# Offered formats per kind, in display order
_REACHABLE: dict[FileKind, tuple[ConversionFormat, ...]] = {
    FileKind.DOCUMENT: (
        ConversionFormat.PDF,
        ConversionFormat.PNG,
        ConversionFormat.JPG,
        ConversionFormat.HEIC,
        ConversionFormat.TIFF,
    ),
    FileKind.IMAGE: (
        ConversionFormat.PDF,
        ConversionFormat.PNG,
        ConversionFormat.JPG,
        ConversionFormat.HEIC,
        ConversionFormat.WEBP,
        ConversionFormat.TIFF,
    ),
    FileKind.VIDEO: (ConversionFormat.MP4, ConversionFormat.MOV, ConversionFormat.GIF),
    FileKind.PRESENTATION: (ConversionFormat.PDF, ConversionFormat.PNG, ConversionFormat.JPG),
    FileKind.SPREADSHEET: (ConversionFormat.PDF,),
    FileKind.UNKNOWN_BINARY: (),
}

DOCUMENT_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt", ".rtf", ".odt", ".pages"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".heic", ".heif", ".gif", ".webp", ".bmp", ".tiff", ".tif", ".avif"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".m4v", ".webm", ".3gp"}
PRESENTATION_EXTENSIONS = {".ppt", ".pptx", ".key", ".odp"}
SPREADSHEET_EXTENSIONS = {".xls", ".xlsx", ".csv", ".numbers", ".ods"}

# Magika content-type labels that settle the kind on their own. Text labels
# (txt, csv, markdown, ...) are left to the extension.
_LABEL_KINDS = {
    **dict.fromkeys(("pdf", "doc", "docx", "rtf", "odt"), FileKind.DOCUMENT),
    **dict.fromkeys(("png", "jpeg", "gif", "tiff", "webp", "bmp", "heic", "heif", "avif"), FileKind.IMAGE),
    **dict.fromkeys(("mp4", "mov", "avi", "mkv", "webm", "3gp"), FileKind.VIDEO),
    **dict.fromkeys(("ppt", "pptx", "odp"), FileKind.PRESENTATION),
    **dict.fromkeys(("xls", "xlsx", "ods"), FileKind.SPREADSHEET),
}

_magika: Optional[Magika] = None
_magika_lock = threading.Lock()


def _detector() -> Magika:
    """Shared Magika instance, loaded on first use."""
    global _magika
    with _magika_lock:
        if _magika is None:
            _magika = Magika()
            logger.debug("Initialized Magika file type detector")
        return _magika


def kind_from_extension(suffix: str) -> FileKind:
    ext = suffix.lower()
    if ext in DOCUMENT_EXTENSIONS:
        return FileKind.DOCUMENT
    if ext in IMAGE_EXTENSIONS:
        return FileKind.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return FileKind.VIDEO
    if ext in PRESENTATION_EXTENSIONS:
        return FileKind.PRESENTATION
    if ext in SPREADSHEET_EXTENSIONS:
        return FileKind.SPREADSHEET
    return FileKind.UNKNOWN_BINARY


def _kind_from_content(path: Path) -> Optional[FileKind]:
    try:
        detector = _detector()
        with _magika_lock:
            result = detector.identify_path(path)
    except (OSError, ValueError, RuntimeError) as e:
        logger.debug("Content detection failed for %s: %s", path, e)
        return None
    if not result.ok:
        logger.debug("Content detection skipped %s: %s", path, result.status)
        return None
    label = str(result.output.label).lower()
    if result.score < config.DETECTION_MIN_SCORE:
        logger.debug("Low confidence for %s: %s (%.2f)", path, label, result.score)
        return None
    return _LABEL_KINDS.get(label)


def detect_kind(path) -> FileKind:
    """Classify a file by content (Magika), then by extension. Never raises."""
    path = Path(path)
    kind = _kind_from_content(path) if path.is_file() else None
    if kind is not None:
        return kind
    return kind_from_extension(path.suffix)


def available_formats(kind: FileKind) -> tuple[ConversionFormat, ...]:
    return _REACHABLE[kind]


def is_multi_file_merge_eligible(
    target: ConversionFormat,
    file_count: int,
    kinds: Optional[Iterable[FileKind]] = None,
) -> bool:
    """True only for several image sources collapsing into one PDF."""
    if target is not ConversionFormat.PDF or file_count <= 1:
        return False
    if kinds is not None:
        return all(k is FileKind.IMAGE for k in kinds)
    return True


def _pdf_page_count(path: Path) -> Optional[int]:
    try:
        with fitz.open(path) as doc:
            return doc.page_count
    except (RuntimeError, ValueError) as e:
        logger.warning("Could not count pages of %s: %s", path, e)
        return None


@dataclass(frozen=True)
class FileReference:
    """A classified source file."""

    path: Path
    name: str
    size: int
    kind: FileKind
    page_count: Optional[int] = None

    @classmethod
    def from_path(cls, path, name: Optional[str] = None) -> "FileReference":
        """Classify ``path``. ``name`` overrides the logical name (e.g. the uploaded filename)."""
        path = Path(path)
        kind = detect_kind(path)
        page_count = None
        if kind is FileKind.DOCUMENT and is_pdf(path):
            page_count = _pdf_page_count(path)
        return cls(
            path=path,
            name=name or path.name,
            size=path.stat().st_size,
            kind=kind,
            page_count=page_count,
        )

    @property
    def stem(self) -> str:
        return Path(self.name).stem or "file"


def is_pdf(path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(4) == b"%PDF"
    except OSError:
        return False
