"""Conversion options, their documented bounds, and named presets."""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from optimizer.errors import OptionsOutOfRange, OptimizerError

QUALITY_MIN = 0.10
QUALITY_MAX = 1.00
GIF_FPS_MIN = 5
GIF_FPS_MAX = 30
MAX_DIMENSION_MIN = 256
MAX_DIMENSION_MAX = 8000
GIF_SIZE_MIN = 64
GIF_SIZE_MAX = 1080
GIF_FRAMES_MIN = 1
GIF_FRAMES_MAX = 300


class VideoQualityTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [VideoQualityTier.LOW, VideoQualityTier.MEDIUM, VideoQualityTier.HIGH]


class PagePolicy(str, Enum):
    """What to do when a multi-page source targets a single-page format."""

    ARCHIVE = "archive"  # one image per page, packed into a zip
    REJECT = "reject"  # fail with MultiPageUnsupported


@dataclass(frozen=True)
class ConversionOptions:
    quality: float = 0.85
    video_quality: VideoQualityTier = VideoQualityTier.HIGH
    gif_frame_rate: int = 10
    max_dimension: int = 3000
    gif_size: int = 480
    max_gif_frames: int = 100
    target_size_bytes: Optional[int] = None
    page_policy: PagePolicy = PagePolicy.ARCHIVE

    def validate(self) -> "ConversionOptions":
        """Reject out-of-range values. Returns self so calls can be chained.

        Every field is checked, including ones the target format ignores, so
        the same options always give the same verdict.
        """
        _check_range("quality", self.quality, QUALITY_MIN, QUALITY_MAX)
        _check_range("gif_frame_rate", self.gif_frame_rate, GIF_FPS_MIN, GIF_FPS_MAX)
        _check_range("max_dimension", self.max_dimension, MAX_DIMENSION_MIN, MAX_DIMENSION_MAX)
        _check_range("gif_size", self.gif_size, GIF_SIZE_MIN, GIF_SIZE_MAX)
        _check_range("max_gif_frames", self.max_gif_frames, GIF_FRAMES_MIN, GIF_FRAMES_MAX)
        if self.target_size_bytes is not None and self.target_size_bytes <= 0:
            raise OptionsOutOfRange("target_size_bytes", self.target_size_bytes, 1, "unbounded")
        if not isinstance(self.video_quality, VideoQualityTier):
            raise OptimizerError(f"Unknown video quality tier: {self.video_quality!r}")
        if not isinstance(self.page_policy, PagePolicy):
            raise OptimizerError(f"Unknown page policy: {self.page_policy!r}")
        return self

    def with_overrides(self, **changes) -> "ConversionOptions":
        """Copy with the given fields replaced; ``None`` values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _check_range(name: str, value, low, high) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OptionsOutOfRange(name, value, low, high)
    if not (low <= value <= high):
        raise OptionsOutOfRange(name, value, low, high)


DEFAULT_OPTIONS = ConversionOptions()


class Preset(str, Enum):
    MAIL = "mail"
    WHATSAPP = "whatsapp"
    QUALITY = "quality"
    CUSTOM = "custom"


MAIL_TARGET_BYTES = 25 * 1024 * 1024

PRESET_OPTIONS: dict[Preset, ConversionOptions] = {
    Preset.MAIL: ConversionOptions(
        quality=0.3,
        video_quality=VideoQualityTier.LOW,
        max_dimension=1600,
        target_size_bytes=MAIL_TARGET_BYTES,
    ),
    Preset.WHATSAPP: ConversionOptions(
        quality=0.5,
        video_quality=VideoQualityTier.MEDIUM,
        max_dimension=2000,
    ),
    Preset.QUALITY: ConversionOptions(
        quality=0.95,
        video_quality=VideoQualityTier.HIGH,
        max_dimension=4000,
    ),
}

PRESET_DESCRIPTIONS = {
    Preset.MAIL: "Fits email attachments (25 MB)",
    Preset.WHATSAPP: "Optimized for quick sharing",
    Preset.QUALITY: "Maximum quality, minimal compression",
    Preset.CUSTOM: "Explicit options",
}


def resolve_preset(preset, custom: Optional[ConversionOptions] = None) -> ConversionOptions:
    """Pure lookup of a preset name to its options. ``custom`` requires explicit options."""
    try:
        preset = Preset(preset)
    except ValueError:
        raise OptimizerError(f"Unknown preset: {preset!r}") from None
    if preset is Preset.CUSTOM:
        if custom is None:
            raise OptimizerError("The custom preset needs explicit conversion options")
        return custom
    return PRESET_OPTIONS[preset]
