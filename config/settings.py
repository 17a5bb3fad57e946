from dataclasses import dataclass, field
from pydantic_settings import BaseSettings
from typing import Dict, Optional

# full-length encoder invocations in the longest plan (two-pass compress, palette gif)
MAX_ENCODE_PASSES = 2


class Settings(BaseSettings):
    # Infrastructure
    database_url: str = "sqlite:///./media_jobs.db"
    redis_url: str = "redis://localhost:6379/0"
    storage_dir: str = "./storage"
    log_level: str = "INFO"

    # Optional cloud storage
    s3_bucket: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "us-east-1"

    # Encoder
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    encoder_timeout: float = 3600.0  # per invocation, seconds
    thumbnail_timeout: float = 30.0
    cancel_poll_interval: float = 2.0

    # Progress publishing
    progress_min_interval: float = 1.0
    progress_min_delta: float = 1.0
    heartbeat_interval: float = 30.0

    # Queue
    task_max_retries: int = 5
    task_retry_backoff_max: int = 600
    # slack added on top of the longest possible job before Redis redelivers
    visibility_margin: float = 1800.0
    compress_concurrency: int = 2
    convert_concurrency: int = 2
    trim_concurrency: int = 2
    gif_concurrency: int = 2
    thumbnail_concurrency: int = 3  # lightweight
    frames_concurrency: int = 2
    audio_concurrency: int = 3

    # Two-phase weighting (first phase share of the job, percent)
    two_pass_first_weight: float = 50.0
    gif_palette_weight: float = 40.0

    api_port: int = 8000

    class Config:
        env_file = ".env"
        extra = "ignore"

    def concurrency_for(self, kind: str) -> int:
        return getattr(self, f"{kind}_concurrency", 2)

    def longest_job(self) -> float:
        """Upper bound on one job's run time in seconds: two full encoder
        passes plus a full set of thumbnail-sized invocations."""
        from core.params import MAX_THUMBNAILS
        return MAX_ENCODE_PASSES * self.encoder_timeout + MAX_THUMBNAILS * self.thumbnail_timeout


@dataclass(frozen=True)
class RunnerConfig:
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    timeout: float = 3600.0
    thumbnail_timeout: float = 30.0
    cancel_poll_interval: float = 2.0
    two_pass_first_weight: float = 50.0
    gif_palette_weight: float = 40.0
    storage_dir: str = "./storage"

    @classmethod
    def from_settings(cls, s: Settings) -> "RunnerConfig":
        return cls(ffmpeg_path=s.ffmpeg_path, ffprobe_path=s.ffprobe_path,
                   timeout=s.encoder_timeout, thumbnail_timeout=s.thumbnail_timeout,
                   cancel_poll_interval=s.cancel_poll_interval,
                   two_pass_first_weight=s.two_pass_first_weight,
                   gif_palette_weight=s.gif_palette_weight,
                   storage_dir=s.storage_dir)


@dataclass(frozen=True)
class PublisherConfig:
    redis_url: Optional[str] = None  # None selects the in-memory publisher
    min_interval: float = 1.0
    min_delta: float = 1.0
    heartbeat_interval: float = 30.0

    @classmethod
    def from_settings(cls, s: Settings) -> "PublisherConfig":
        return cls(redis_url=s.redis_url, min_interval=s.progress_min_interval,
                   min_delta=s.progress_min_delta,
                   heartbeat_interval=s.heartbeat_interval)


@dataclass(frozen=True)
class QueueConfig:
    broker_url: str = "redis://localhost:6379/0"
    max_retries: int = 5
    retry_backoff_max: int = 600
    visibility_timeout: float = 3 * 3600.0
    concurrency: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, s: Settings) -> "QueueConfig":
        from core.registry import KINDS
        return cls(broker_url=s.redis_url, max_retries=s.task_max_retries,
                   retry_backoff_max=s.task_retry_backoff_max,
                   visibility_timeout=s.longest_job() + s.visibility_margin,
                   concurrency={k: s.concurrency_for(k) for k in KINDS})


try:
    settings = Settings()
except Exception:
    settings = Settings(_env_file=None)
