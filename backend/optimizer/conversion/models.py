"""Conversion result models."""
from dataclasses import dataclass
from pathlib import Path

from optimizer.formats import ConversionFormat

ARCHIVE_MEDIA_TYPE = "application/zip"


@dataclass(frozen=True)
class Artifact:
    """Output of a conversion job: the bytes plus what they are.

    Persisting or sharing the payload is up to the caller.
    """

    data: bytes
    target: ConversionFormat
    file_name: str
    page_count: int = 1
    # True when a multi-page source was split into one image per page inside a zip
    is_archive: bool = False

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def media_type(self) -> str:
        return ARCHIVE_MEDIA_TYPE if self.is_archive else self.target.media_type


@dataclass(frozen=True)
class CodecOutput:
    """A file written by a codec inside the job's work directory."""

    path: Path
    page_count: int = 1
    is_archive: bool = False
