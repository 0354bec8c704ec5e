import json
import subprocess
from pathlib import Path

import pytest

from optimizer.conversion import video
from optimizer.conversion.video import (
    VideoInfo,
    gif_command,
    plan_video_bitrate,
    probe_video,
    transcode_command,
)
from optimizer.errors import CodecFailure
from optimizer.formats import ConversionFormat
from optimizer.options import ConversionOptions, VideoQualityTier


class FakeResult:
    def __init__(self, stdout: bytes):
        self.stdout = stdout
        self.stderr = b""


def fake_ffprobe(monkeypatch, payload):
    def fake_run(cmd, capture_output, check, timeout):
        assert cmd[0] == video.config.FFPROBE_BIN
        assert "-show_streams" in cmd
        return FakeResult(json.dumps(payload).encode())

    monkeypatch.setattr(video.subprocess, "run", fake_run)


def test_probe_video(monkeypatch):
    fake_ffprobe(monkeypatch, {
        "streams": [
            {"codec_type": "video", "width": 1920, "height": 1080, "avg_frame_rate": "30000/1001"},
            {"codec_type": "audio"},
        ],
        "format": {"duration": "12.5", "bit_rate": "8000000"},
    })
    info = probe_video(Path("clip.mp4"))
    assert (info.width, info.height) == (1920, 1080)
    assert info.fps == pytest.approx(29.97, abs=0.01)
    assert info.duration == 12.5
    assert info.bit_rate == 8_000_000
    assert info.has_audio


def test_no_video_stream(monkeypatch):
    fake_ffprobe(monkeypatch, {"streams": [{"codec_type": "audio"}], "format": {}})
    with pytest.raises(CodecFailure, match="no video stream"):
        probe_video(Path("song.m4a"))


def test_ffprobe_errors(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(video.subprocess, "run", missing)
    with pytest.raises(CodecFailure, match="not installed"):
        probe_video(Path("clip.mp4"))

    def failing(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, stderr=b"clip.mp4: Invalid data found")

    monkeypatch.setattr(video.subprocess, "run", failing)
    with pytest.raises(CodecFailure, match="Invalid data"):
        probe_video(Path("clip.mp4"))


@pytest.mark.parametrize("tier,crf,height", [
    (VideoQualityTier.LOW, "32", "480"),
    (VideoQualityTier.MEDIUM, "26", "720"),
    (VideoQualityTier.HIGH, "20", "1080"),
])
def test_transcode_tiers(tier, crf, height):
    cmd = transcode_command(Path("in.mov"), Path("out.mp4"), ConversionFormat.MP4, ConversionOptions(video_quality=tier))
    assert cmd[cmd.index("-crf") + 1] == crf
    assert f"min({height},ih)" in cmd[cmd.index("-vf") + 1]
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert "+faststart" in cmd
    assert cmd[-1] == "out.mp4"


def test_mov_uses_quicktime_muxer():
    cmd = transcode_command(Path("in.mp4"), Path("out.mov"), ConversionFormat.MOV, ConversionOptions())
    assert cmd[cmd.index("-f") + 1] == "mov"
    assert "+faststart" not in cmd


def test_size_budget_caps_bitrate():
    info = VideoInfo(width=1280, height=720, fps=30.0, duration=100.0, bit_rate=10_000_000, has_audio=True)
    opts = ConversionOptions(target_size_bytes=25 * 1024 * 1024)
    cmd = transcode_command(Path("in.mp4"), Path("out.mp4"), ConversionFormat.MP4, opts, info)
    maxrate = int(cmd[cmd.index("-maxrate") + 1])
    audio = int(cmd[cmd.index("-b:a") + 1])
    assert (maxrate + audio) * 100 / 8 <= 25 * 1024 * 1024


def test_plan_video_bitrate():
    assert plan_video_bitrate(1_000_000, None, 0) is None
    assert plan_video_bitrate(1_000_000, 0, 0) is None
    assert plan_video_bitrate(10, 100.0, 0) == video.MIN_VIDEO_BITRATE
    assert plan_video_bitrate(1_000_000, 10.0, 0) == int(1_000_000 * 8 * (1 - video.SIZE_BUDGET_OVERHEAD) / 10)


def test_gif_command():
    opts = ConversionOptions(gif_frame_rate=15, gif_size=320, max_gif_frames=60)
    cmd = gif_command(Path("in.mp4"), Path("out.gif"), opts)
    vf = cmd[cmd.index("-vf") + 1]
    assert vf.startswith("fps=15,")
    assert "min(320,iw)" in vf
    assert "palettegen" in vf and "paletteuse" in vf
    assert cmd[cmd.index("-frames:v") + 1] == "60"
    assert "-an" in cmd
    assert cmd[-2:] == ["gif", "out.gif"]
