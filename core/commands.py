"""
Encoder invocation builders.

Each builder turns a kind's parameters into an ``EncodePlan``: the ordered
ffmpeg argument vectors to run, where the final artifact lands, and which
intermediate files must be cleaned up afterwards.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from core.params import (AudioParams, CompressParams, ConvertParams, FrameParams, GifParams,
                         ThumbnailParams, TrimParams)

CODECS = {"h264": "libx264", "h265": "libx265"}
ENCODER_PRESETS = {"high": "slow", "medium": "medium", "low": "fast"}

COMPRESS_PRESETS = {
    "high": {"codec": "h265", "crf": 20, "two_pass": True},
    "medium": {"codec": "h264", "crf": 23, "two_pass": False},
    "low": {"codec": "h264", "crf": 28, "two_pass": False},
}

REMUX_PAIRS = {("mkv", "mp4"), ("mov", "mp4"), ("m4v", "mp4")}

CONVERT_PRESETS = {
    "fast": dict(video="libx264", webm_video="libvpx", audio="aac", webm_audio="libvorbis",
                 crf=28, audio_bitrate="128k", encoding_preset="veryfast"),
    "balanced": dict(video="libx264", webm_video="libvpx-vp9", audio="aac", webm_audio="libopus",
                     crf=23, audio_bitrate="192k", encoding_preset="medium"),
    "high-quality": dict(video="libx264", webm_video="libvpx-vp9", audio="aac",
                         webm_audio="libopus", crf=18, audio_bitrate="256k",
                         encoding_preset="slow"),
    "web-optimized": dict(video="libvpx-vp9", webm_video="libvpx-vp9", audio="libopus",
                          webm_audio="libopus", video_bitrate="1M", audio_bitrate="128k",
                          encoding_preset="medium"),
    "audio-lossless": dict(audio="flac", webm_audio="flac"),
    "audio-compressed": dict(audio="libmp3lame", webm_audio="libmp3lame", audio_bitrate="320k"),
}

DEFAULT_VIDEO_CODECS = {
    "mp4": "libx264", "mkv": "libx264", "webm": "libvpx-vp9", "avi": "mpeg4",
    "mov": "libx264", "flv": "libx264", "wmv": "wmv2", "m4v": "libx264",
    "mpg": "mpeg2video", "mpeg": "mpeg2video",
}

DEFAULT_AUDIO_CODECS = {
    "mp4": "aac", "mkv": "aac", "webm": "libopus", "avi": "mp3", "mov": "aac",
    "flv": "aac", "wmv": "wmav2", "m4v": "aac", "mp3": "libmp3lame", "aac": "aac",
    "m4a": "aac", "flac": "flac", "ogg": "libvorbis", "wav": "pcm_s16le",
    "wma": "wmav2", "opus": "libopus",
}

AUDIO_FORMATS = {"mp3", "aac", "m4a", "flac", "ogg", "wav", "wma", "opus"}
VIDEO_FORMATS = set(DEFAULT_VIDEO_CODECS)
MP4_FAMILY = {"mp4", "mov", "m4v", "m4a"}


@dataclass
class Invocation:
    argv: List[str]
    phase: str = "encoding"
    # known output duration, used instead of the input's announced Duration
    expected_duration: Optional[float] = None


@dataclass
class EncodePlan:
    invocations: List[Invocation]
    output_ref: str
    outputs: List[str] = field(default_factory=list)
    intermediates: List[str] = field(default_factory=list)


def base_name(path: str) -> str:
    return os.path.splitext(os.path.basename(path))[0]


def extension(path: str) -> str:
    return os.path.splitext(path)[1].lower().lstrip(".")


def is_audio_format(fmt: str) -> bool:
    return fmt.lower().lstrip(".") in AUDIO_FORMATS


def estimate_bitrate(target_size: Optional[float], input_kbps: Optional[int] = None) -> str:
    """Target video bitrate for a size percentage; assumes 5 Mbps input if unknown."""
    if target_size:
        base = input_kbps or 5000
        return f"{max(round(base * target_size / 100), 100)}k"
    return "2000k"


# -- compress ---------------------------------------------------------------

def compress_plan(params: CompressParams, input_path: str, output_dir: str,
                  ffmpeg: str = "ffmpeg", input_kbps: int = None) -> EncodePlan:
    preset = COMPRESS_PRESETS[params.preset]
    codec = CODECS[params.codec or preset["codec"]]
    crf = params.crf if params.crf is not None else preset["crf"]
    two_pass = preset["two_pass"] if params.two_pass is None else params.two_pass
    output = os.path.join(output_dir, f"{base_name(input_path)}_compressed.mp4")

    head = [ffmpeg, "-i", input_path, "-c:v", codec, "-preset", ENCODER_PRESETS[params.preset]]
    scale = ["-vf", f"scale={params.resolution}"] if params.resolution else []

    if not two_pass:
        if params.crf is not None or not (params.bitrate or params.target_size):
            quality = ["-crf", str(crf)]
        else:
            quality = ["-b:v", params.bitrate or estimate_bitrate(params.target_size, input_kbps)]
        argv = head + quality + scale + [
            "-c:a", "aac", "-b:a", "128k", "-movflags", "+faststart", "-y", output]
        return EncodePlan([Invocation(argv)], output, outputs=[output])

    bitrate = params.bitrate or estimate_bitrate(params.target_size, input_kbps)
    passlog = os.path.join(output_dir, f"{base_name(input_path)}_passlog")

    def rate_control(n: int) -> List[str]:
        if codec == "libx265":
            # x265 ignores -pass and keeps its own stats file
            return ["-b:v", bitrate, "-x265-params", f"pass={n}:stats={passlog}.x265"]
        return ["-b:v", bitrate, "-pass", str(n), "-passlogfile", passlog]

    first = head + rate_control(1) + scale + ["-an", "-f", "null", "-y", os.devnull]
    second = head + rate_control(2) + scale + [
        "-c:a", "aac", "-b:a", "128k", "-movflags", "+faststart", "-y", output]
    if codec == "libx265":
        intermediates = [f"{passlog}.x265", f"{passlog}.x265.cutree"]
    else:
        intermediates = [passlog + "-0.log", passlog + "-0.log.mbtree"]
    return EncodePlan([Invocation(first, phase="pass_1"), Invocation(second, phase="pass_2")],
                      output, outputs=[output], intermediates=intermediates)


# -- convert ----------------------------------------------------------------

def can_remux(from_format: Optional[str], to_format: str) -> bool:
    if not from_format:
        return False
    pair = (from_format.lower().lstrip("."), to_format.lower().lstrip("."))
    return pair in REMUX_PAIRS or pair[::-1] in REMUX_PAIRS


def convert_plan(params: ConvertParams, input_path: str, output_dir: str,
                 ffmpeg: str = "ffmpeg") -> EncodePlan:
    to_format = params.to_format
    from_format = params.from_format or extension(input_path)
    output = os.path.join(output_dir, f"{base_name(input_path)}_converted.{to_format}")
    faststart = ["-movflags", "+faststart"] if to_format in MP4_FAMILY else []

    if params.copy_streams or can_remux(from_format, to_format):
        argv = [ffmpeg, "-i", input_path, "-c", "copy"] + faststart + ["-y", output]
        return EncodePlan([Invocation(argv, phase="remux")], output, outputs=[output])

    preset = CONVERT_PRESETS.get(params.preset, {}) if params.preset else {}
    webm = to_format == "webm"
    argv = [ffmpeg, "-i", input_path]

    if is_audio_format(to_format):
        argv.append("-vn")
    else:
        video_codec = (params.video_codec or preset.get("webm_video" if webm else "video")
                       or DEFAULT_VIDEO_CODECS.get(to_format))
        if video_codec:
            argv += ["-c:v", video_codec]
            if params.crf is not None:
                argv += ["-crf", str(params.crf)]
            elif params.video_bitrate:
                argv += ["-b:v", params.video_bitrate]
            elif preset.get("crf") is not None:
                argv += ["-crf", str(preset["crf"])]
            elif preset.get("video_bitrate"):
                argv += ["-b:v", preset["video_bitrate"]]
            if preset.get("encoding_preset") and "x26" in video_codec:
                argv += ["-preset", preset["encoding_preset"]]
            if params.resolution:
                argv += ["-vf", f"scale={params.resolution}"]

    audio_codec = (params.audio_codec or preset.get("webm_audio" if webm else "audio")
                   or DEFAULT_AUDIO_CODECS.get(to_format))
    if audio_codec:
        argv += ["-c:a", audio_codec]
        audio_bitrate = params.audio_bitrate or preset.get("audio_bitrate")
        if audio_bitrate:
            argv += ["-b:a", audio_bitrate]

    argv += faststart + ["-y", output]
    return EncodePlan([Invocation(argv, phase="transcode")], output, outputs=[output])


# -- trim -------------------------------------------------------------------

def trim_plan(params: TrimParams, input_path: str, output_dir: str,
              ffmpeg: str = "ffmpeg") -> EncodePlan:
    ext = os.path.splitext(input_path)[1] or ".mp4"
    output = os.path.join(output_dir, f"{base_name(input_path)}_trimmed{ext}")
    start, end = str(params.start_time), str(params.end_time)
    if params.lossless:
        argv = [ffmpeg, "-ss", start, "-to", end, "-i", input_path, "-c", "copy",
                "-avoid_negative_ts", "make_zero", "-y", output]
    else:
        argv = [ffmpeg, "-i", input_path, "-ss", start, "-to", end,
                "-c:v", "libx264", "-preset", "medium", "-crf", "23",
                "-c:a", "aac", "-b:a", "192k", "-y", output]
    return EncodePlan([Invocation(argv, phase="trim", expected_duration=params.duration)],
                      output, outputs=[output])


# -- gif --------------------------------------------------------------------

def gif_plan(params: GifParams, input_path: str, output_dir: str,
             ffmpeg: str = "ffmpeg") -> EncodePlan:
    output = os.path.join(output_dir, f"{base_name(input_path)}.gif")
    palette = os.path.join(output_dir, f"{base_name(input_path)}_palette.png")
    start, end = str(params.start_time), str(params.end_time)
    filters = f"fps={params.fps},scale={params.width}:-1:flags=lanczos"
    seek = [ffmpeg, "-ss", start, "-to", end, "-i", input_path]

    if not params.optimize:
        argv = seek + ["-vf", filters, "-y", output]
        return EncodePlan([Invocation(argv, phase="gif", expected_duration=params.duration)],
                          output, outputs=[output])

    palette_argv = seek + ["-vf", f"{filters},palettegen=stats_mode=diff", "-y", palette]
    gif_argv = seek + ["-i", palette, "-lavfi",
                       f"{filters} [x]; [x][1:v] paletteuse=dither=bayer:bayer_scale=5",
                       "-y", output]
    return EncodePlan(
        [Invocation(palette_argv, phase="palette", expected_duration=params.duration),
         Invocation(gif_argv, phase="gif", expected_duration=params.duration)],
        output, outputs=[output], intermediates=[palette])


# -- thumbnail --------------------------------------------------------------

def even_timestamps(duration: float, count: int) -> List[float]:
    """``count`` timestamps spaced evenly inside (0, duration)."""
    if duration <= 0 or count <= 0:
        return []
    interval = duration / (count + 1)
    return [round(interval * i, 2) for i in range(1, count + 1)]


def thumbnail_argv(input_path: str, output: str, timestamp, width: int,
                   ffmpeg: str = "ffmpeg") -> List[str]:
    return [ffmpeg, "-ss", str(timestamp), "-i", input_path, "-vframes", "1",
            "-vf", f"scale={width}:-1", "-q:v", "2", "-y", output]


def thumbnail_plan(params: ThumbnailParams, input_path: str, output_dir: str,
                   ffmpeg: str = "ffmpeg") -> EncodePlan:
    """One invocation per timestamp; ``params.timestamps`` must be resolved."""
    invocations, outputs = [], []
    for i, ts in enumerate(params.timestamps or []):
        output = os.path.join(output_dir, f"{base_name(input_path)}_thumb_{i + 1}.jpg")
        invocations.append(Invocation(thumbnail_argv(input_path, output, ts, params.width,
                                                     ffmpeg), phase=f"thumbnail_{i + 1}"))
        outputs.append(output)
    return EncodePlan(invocations, output_dir, outputs=outputs)


# -- frames -----------------------------------------------------------------

def frame_pattern(params: FrameParams, input_path: str, output_dir: str) -> str:
    name = params.output_base_name or base_name(input_path)
    return os.path.join(output_dir, f"{name}_frame_%05d.{params.format}")


def frames_plan(params: FrameParams, input_path: str, output_dir: str,
                ffmpeg: str = "ffmpeg") -> EncodePlan:
    argv = [ffmpeg, "-ss", str(params.start_time), "-i", input_path,
            "-t", f"{params.duration:g}", "-vf", f"fps={params.fps:g}", "-start_number", "1"]
    if params.format == "jpg":
        argv += ["-q:v", "2"]
    else:
        argv += ["-compression_level", "3"]
    argv += ["-y", frame_pattern(params, input_path, output_dir)]
    return EncodePlan([Invocation(argv, phase="frames", expected_duration=params.duration)],
                      output_dir)


# -- audio ------------------------------------------------------------------

def audio_plan(params: AudioParams, input_path: str, output_dir: str,
               ffmpeg: str = "ffmpeg") -> EncodePlan:
    fmt = params.output_format.lower().lstrip(".")
    output = os.path.join(output_dir, f"{base_name(input_path)}_audio.{fmt}")
    codec = params.audio_codec or DEFAULT_AUDIO_CODECS.get(fmt, "libmp3lame")
    argv = [ffmpeg, "-i", input_path, "-vn", "-c:a", codec]
    if params.bitrate and params.bitrate != "lossless":
        argv += ["-b:a", params.bitrate]
    argv += ["-y", output]
    return EncodePlan([Invocation(argv, phase="audio")], output, outputs=[output])


BUILDERS = {
    "compress": compress_plan,
    "convert": convert_plan,
    "trim": trim_plan,
    "gif": gif_plan,
    "thumbnail": thumbnail_plan,
    "frames": frames_plan,
    "audio": audio_plan,
}


def build_invocations(kind: str, params, input_path: str, output_dir: str,
                      ffmpeg: str = "ffmpeg") -> EncodePlan:
    return BUILDERS[kind](params, input_path, output_dir, ffmpeg=ffmpeg)
