"""Video probing and ffmpeg command construction."""
import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from optimizer import config
from optimizer.conversion.models import CodecOutput
from optimizer.conversion.process import run_codec
from optimizer.errors import CodecFailure
from optimizer.formats import ConversionFormat
from optimizer.options import ConversionOptions, VideoQualityTier
from optimizer.progress import CancellationToken

logger = logging.getLogger("optimizer.video")

# tier -> (x264 CRF, max output height, audio bitrate); lower CRF = better quality
TIER_SETTINGS = {
    VideoQualityTier.LOW: (32, 480, 96_000),
    VideoQualityTier.MEDIUM: (26, 720, 128_000),
    VideoQualityTier.HIGH: (20, 1080, 160_000),
}
# Container overhead reserved when planning a bitrate for a byte budget
SIZE_BUDGET_OVERHEAD = 0.03
MIN_VIDEO_BITRATE = 100_000


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    fps: Optional[float]
    duration: Optional[float]
    bit_rate: Optional[int]
    has_audio: bool


def ffprobe_json(path: Path) -> dict[str, Any]:
    cmd = [
        config.FFPROBE_BIN, "-v", "error",
        "-show_format", "-show_streams",
        "-of", "json", str(path),
    ]
    try:
        proc = subprocess.run(cmd, capture_output=True, check=True, timeout=60)
    except FileNotFoundError as e:
        raise CodecFailure("ffprobe is not installed", e) from e
    except subprocess.CalledProcessError as e:
        msg = (e.stderr or b"").decode("utf-8", "replace").strip() or "ffprobe failed"
        raise CodecFailure(msg, e) from e
    except subprocess.TimeoutExpired as e:
        raise CodecFailure("ffprobe timed out", e) from e
    stdout = proc.stdout.decode("utf-8", "replace")
    if not stdout.strip():
        return {}
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise CodecFailure("ffprobe returned invalid JSON", e) from e


def _parse_fraction(value: Any) -> Optional[float]:
    if not value or not isinstance(value, str):
        return None
    num, _, den = value.partition("/")
    try:
        n = float(num)
        d = float(den) if den else 1.0
    except ValueError:
        return None
    if d == 0 or n == 0:
        return None
    return n / d


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def probe_video(path: Path) -> VideoInfo:
    data = ffprobe_json(path)
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None or not video.get("width") or not video.get("height"):
        raise CodecFailure("no video stream found")
    fmt = data.get("format") or {}
    bit_rate = _to_float(fmt.get("bit_rate")) or _to_float(video.get("bit_rate"))
    return VideoInfo(
        width=int(video["width"]),
        height=int(video["height"]),
        fps=_parse_fraction(video.get("avg_frame_rate")) or _parse_fraction(video.get("r_frame_rate")),
        duration=_to_float(fmt.get("duration")) or _to_float(video.get("duration")),
        bit_rate=int(bit_rate) if bit_rate else None,
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


def plan_video_bitrate(target_bytes: int, duration: Optional[float], audio_bps: int) -> Optional[int]:
    """Video bits per second that keep the output within target_bytes, or None if unknown."""
    if not duration or duration <= 0:
        return None
    total_bps = target_bytes * 8 * (1 - SIZE_BUDGET_OVERHEAD) / duration
    return max(MIN_VIDEO_BITRATE, int(total_bps - audio_bps))


def transcode_command(
    src: Path,
    dst: Path,
    target: ConversionFormat,
    options: ConversionOptions,
    info: Optional[VideoInfo] = None,
) -> list[str]:
    crf, max_height, audio_bps = TIER_SETTINGS[options.video_quality]
    cmd = [
        config.FFMPEG_BIN, "-y", "-nostdin", "-i", str(src),
        "-map", "0:v:0", "-map", "0:a:0?",
        "-c:v", "libx264", "-preset", "medium", "-crf", str(crf),
        "-vf", f"scale=-2:'min({max_height},ih)'",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac", "-b:a", str(audio_bps),
    ]
    if options.target_size_bytes and info is not None:
        bitrate = plan_video_bitrate(
            options.target_size_bytes, info.duration, audio_bps if info.has_audio else 0
        )
        if bitrate:
            cmd += ["-maxrate", str(bitrate), "-bufsize", str(bitrate * 2)]
    if target is ConversionFormat.MP4:
        cmd += ["-movflags", "+faststart", "-f", "mp4"]
    else:
        cmd += ["-f", "mov"]
    cmd.append(str(dst))
    return cmd


def gif_command(src: Path, dst: Path, options: ConversionOptions) -> list[str]:
    size = options.gif_size
    vf = (
        f"fps={options.gif_frame_rate},"
        f"scale='min({size},iw)':'min({size},ih)':force_original_aspect_ratio=decrease:flags=lanczos,"
        "split[a][b];[a]palettegen[p];[b][p]paletteuse"
    )
    return [
        config.FFMPEG_BIN, "-y", "-nostdin", "-i", str(src),
        "-vf", vf,
        "-frames:v", str(options.max_gif_frames),
        "-loop", "0", "-an",
        "-f", "gif", str(dst),
    ]


async def transcode(
    src: Path,
    out_path: Path,
    target: ConversionFormat,
    options: ConversionOptions,
    token: CancellationToken,
) -> CodecOutput:
    info = await asyncio.to_thread(probe_video, src) if options.target_size_bytes else None
    await run_codec(transcode_command(src, out_path, target, options, info), token)
    if not out_path.is_file():
        raise CodecFailure("ffmpeg produced no output")
    logger.info("Transcoded video %s -> %s", src.name, out_path.name)
    return CodecOutput(out_path)


async def make_gif(
    src: Path,
    out_path: Path,
    options: ConversionOptions,
    token: CancellationToken,
) -> CodecOutput:
    await run_codec(gif_command(src, out_path, options), token)
    if not out_path.is_file():
        raise CodecFailure("ffmpeg produced no output")
    logger.info("Created GIF %s -> %s", src.name, out_path.name)
    return CodecOutput(out_path)
