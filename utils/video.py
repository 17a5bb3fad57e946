import json
import subprocess
from dataclasses import dataclass
from typing import List, Optional
from config.settings import settings
from core.errors import ExecutionError


@dataclass
class MediaInfo:
    duration: float  # seconds
    bitrate: int  # kbps
    width: int
    height: int
    codec: str
    fps: float
    file_size: int


def _parse_rate(rate: Optional[str]) -> float:
    if not rate or rate == "0/0":
        return 0.0
    if "/" in rate:
        num, den = rate.split("/", 1)
        return float(num) / float(den) if float(den) else 0.0
    return float(rate)


def probe_media(path: str, ffprobe: str = None, timeout: float = 60) -> MediaInfo:
    """Read duration, bitrate and video stream properties with ffprobe."""
    cmd = [
        ffprobe or settings.ffprobe_path, "-v", "quiet",
        "-print_format", "json",
        "-show_format", "-show_streams",
        path,
    ]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ExecutionError(f"Failed to probe media: {e}")
    if proc.returncode != 0:
        raise ExecutionError(f"Failed to probe media: ffprobe exited with code {proc.returncode}")

    try:
        data = json.loads(proc.stdout or "{}")
    except ValueError as e:
        raise ExecutionError(f"Failed to probe media: {e}")

    streams: List[dict] = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ExecutionError("Failed to probe media: no video stream found")

    fmt = data.get("format") or {}
    duration = float(fmt.get("duration") or 0)
    file_size = int(fmt.get("size") or 0)
    format_bitrate = int(fmt.get("bit_rate") or 0)

    if format_bitrate > 0:
        bitrate = round(format_bitrate / 1000)
    elif duration > 0 and file_size > 0:
        bitrate = round(file_size * 8 / duration / 1000)
    else:
        bitrate = 0

    return MediaInfo(
        duration=duration,
        bitrate=bitrate,
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        codec=video.get("codec_name") or "unknown",
        fps=_parse_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
        file_size=file_size,
    )

