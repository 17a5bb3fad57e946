"""Validated, immutable parameters for each job kind."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.errors import InvalidJobParametersError
from core.parsers import parse_timecode

TimeValue = Union[str, float]

MAX_THUMBNAILS = 50


def to_seconds(value: TimeValue) -> float:
    """Accepts seconds (number or numeric string) or HH:MM:SS(.ff)."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    seconds = parse_timecode(text)
    if seconds is None:
        raise ValueError(f"invalid time value: {value!r}")
    return seconds


def _non_negative_seconds(value: TimeValue) -> float:
    seconds = to_seconds(value)
    if seconds < 0:
        raise ValueError(f"time value must not be negative: {value!r}")
    return seconds


class KindParams(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class CompressParams(KindParams):
    preset: Literal["high", "medium", "low"] = "medium"
    codec: Optional[Literal["h264", "h265"]] = None
    crf: Optional[int] = Field(default=None, ge=0, le=51)
    bitrate: Optional[str] = Field(default=None, pattern=r"^\d+[kKmM]?$")
    resolution: Optional[str] = Field(default=None, pattern=r"^\d+[x:]-?\d+$")
    target_size: Optional[float] = Field(default=None, gt=0, le=100)
    two_pass: Optional[bool] = None


class ConvertParams(KindParams):
    to_format: str
    from_format: Optional[str] = None
    preset: Optional[Literal["fast", "balanced", "high-quality", "web-optimized",
                             "audio-lossless", "audio-compressed"]] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    video_bitrate: Optional[str] = None
    audio_bitrate: Optional[str] = None
    crf: Optional[int] = Field(default=None, ge=0, le=51)
    resolution: Optional[str] = None
    copy_streams: bool = False

    @field_validator("to_format", "from_format")
    @classmethod
    def _normalize_format(cls, v):
        return v.lower().lstrip(".") if v else v


class _RangeParams(KindParams):
    start_time: TimeValue
    end_time: TimeValue

    @model_validator(mode="after")
    def _check_range(self):
        start, end = to_seconds(self.start_time), to_seconds(self.end_time)
        if start < 0 or end <= start:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def duration(self) -> float:
        return to_seconds(self.end_time) - to_seconds(self.start_time)


class TrimParams(_RangeParams):
    lossless: bool = True


class GifParams(_RangeParams):
    fps: int = Field(default=10, ge=1, le=50)
    width: int = Field(default=480, ge=16, le=1920)
    optimize: bool = True


class ThumbnailParams(KindParams):
    timestamps: Optional[List[TimeValue]] = Field(default=None, max_length=MAX_THUMBNAILS)
    count: int = Field(default=4, ge=1, le=MAX_THUMBNAILS)
    width: int = Field(default=320, ge=16, le=3840)

    @field_validator("timestamps")
    @classmethod
    def _check_timestamps(cls, v):
        if v is not None:
            for ts in v:
                _non_negative_seconds(ts)
        return v


class FrameParams(KindParams):
    start_time: TimeValue = 0
    duration: float = Field(gt=0)
    fps: float = Field(default=1.0, gt=0, le=60)
    format: Literal["jpg", "png"] = "jpg"
    output_base_name: Optional[str] = Field(default=None, pattern=r"^[\w.-]+$")
    estimated_frames: Optional[int] = Field(default=None, ge=0)

    @field_validator("start_time")
    @classmethod
    def _check_start_time(cls, v):
        _non_negative_seconds(v)
        return v


class AudioParams(KindParams):
    output_format: str = "mp3"
    audio_codec: Optional[str] = None
    bitrate: Optional[str] = None


PARAM_MODELS = {
    "compress": CompressParams,
    "convert": ConvertParams,
    "trim": TrimParams,
    "gif": GifParams,
    "thumbnail": ThumbnailParams,
    "frames": FrameParams,
    "audio": AudioParams,
}


def parse_params(kind: str, data: Dict[str, Any]) -> KindParams:
    try:
        model = PARAM_MODELS[kind]
    except KeyError:
        raise InvalidJobParametersError(f"Unknown job kind: {kind}")
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise InvalidJobParametersError(f"Invalid {kind} parameters: {e}") from e
