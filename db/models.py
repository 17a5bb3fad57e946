from sqlalchemy import Column, String, Float, DateTime, Text, BigInteger, JSON
from sqlalchemy.sql import func
from db.session import Base
import uuid

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

ACTIVE_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED)

CANCELLED_ERROR = "Job cancelled by user"


class JobMixin:
    """Columns shared by every job kind."""

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(String, default=PENDING, nullable=False, index=True)
    progress = Column(Float, default=0.0, nullable=False)
    input_ref = Column(String, nullable=False)
    input_size = Column(BigInteger, nullable=True)
    input_duration = Column(Float, nullable=True)
    output_ref = Column(String, nullable=True)
    output_size = Column(BigInteger, nullable=True)
    output_files = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    kind_parameters = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CompressionJob(JobMixin, Base):
    __tablename__ = "compression_jobs"
    thumbnail_ref = Column(String, nullable=True)


class ConversionJob(JobMixin, Base):
    __tablename__ = "conversion_jobs"
    thumbnail_ref = Column(String, nullable=True)


class TrimJob(JobMixin, Base):
    __tablename__ = "trim_jobs"


class GifJob(JobMixin, Base):
    __tablename__ = "gif_jobs"


class ThumbnailJob(JobMixin, Base):
    __tablename__ = "thumbnail_jobs"


class FrameExtractionJob(JobMixin, Base):
    __tablename__ = "frame_extraction_jobs"


class AudioExtractionJob(JobMixin, Base):
    __tablename__ = "audio_extraction_jobs"


JOB_MODELS = {
    "compress": CompressionJob,
    "convert": ConversionJob,
    "trim": TrimJob,
    "gif": GifJob,
    "thumbnail": ThumbnailJob,
    "frames": FrameExtractionJob,
    "audio": AudioExtractionJob,
}
