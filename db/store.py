"""
Job state store.

Single mutation point for job status and progress. Every state change is a
single conditional UPDATE whose WHERE clause carries the allowed source
states, so two deliveries of the same task can never interleave into a torn
record (e.g. ``completed`` with progress below 100).
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import (DisconnectionError, InterfaceError, OperationalError,
                            TimeoutError as PoolTimeoutError)

from core.errors import InfrastructureError, InvalidJobParametersError, JobNotFoundError
from core.events import (CompletedEvent, FailedEvent, PendingEvent, ProcessingEvent,
                         ProgressEvent)
from db.models import (ACTIVE_STATUSES, CANCELLED_ERROR, COMPLETED, FAILED, JOB_MODELS,
                       PENDING, PROCESSING, TERMINAL_STATUSES)
from db.session import SessionLocal

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobSnapshot(BaseModel):
    """Detached, read-only view of a job record."""

    kind: str
    job_id: str
    status: str
    progress: float
    input_ref: str
    input_size: Optional[int] = None
    input_duration: Optional[float] = None
    output_ref: Optional[str] = None
    output_size: Optional[int] = None
    output_files: Optional[List[str]] = None
    thumbnail_ref: Optional[str] = None
    error: Optional[str] = None
    kind_parameters: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_event(self) -> ProgressEvent:
        if self.status == COMPLETED:
            return CompletedEvent(job_id=self.job_id, kind=self.kind,
                                  output_ref=self.output_ref or "",
                                  output_size=self.output_size,
                                  output_files=self.output_files)
        if self.status == FAILED:
            return FailedEvent(job_id=self.job_id, kind=self.kind,
                               error=self.error or "Job failed", progress=self.progress)
        if self.status == PROCESSING:
            return ProcessingEvent(job_id=self.job_id, kind=self.kind, progress=self.progress)
        return PendingEvent(job_id=self.job_id, kind=self.kind, progress=self.progress)

    @classmethod
    def from_record(cls, kind: str, job) -> "JobSnapshot":
        return cls(
            kind=kind,
            job_id=job.id,
            status=job.status,
            progress=job.progress or 0.0,
            input_ref=job.input_ref,
            input_size=job.input_size,
            input_duration=job.input_duration,
            output_ref=job.output_ref,
            output_size=job.output_size,
            output_files=job.output_files,
            thumbnail_ref=getattr(job, "thumbnail_ref", None),
            error=job.error,
            kind_parameters=job.kind_parameters or {},
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


def model_for(kind: str):
    try:
        return JOB_MODELS[kind]
    except KeyError:
        raise InvalidJobParametersError(f"Unknown job kind: {kind}")


class JobStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError) as e:
            session.rollback()
            raise InfrastructureError(f"Job store unavailable: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create(self, kind: str, input_ref: str, kind_parameters: Dict[str, Any] = None,
               job_id: str = None) -> JobSnapshot:
        model = model_for(kind)
        job = model(
            id=job_id or str(uuid.uuid4()),
            status=PENDING,
            progress=0.0,
            input_ref=input_ref,
            kind_parameters=dict(kind_parameters or {}),
            created_at=utcnow(),
        )
        with self._session() as session:
            session.add(job)
            session.flush()
            snapshot = JobSnapshot.from_record(kind, job)
        logger.info("Created %s job %s", kind, snapshot.job_id)
        return snapshot

    def get(self, kind: str, job_id: str) -> Optional[JobSnapshot]:
        model = model_for(kind)
        with self._session() as session:
            job = session.get(model, job_id)
            return JobSnapshot.from_record(kind, job) if job else None

    def snapshot(self, kind: str, job_id: str) -> JobSnapshot:
        """Latest stored state; polling fallback for streaming clients."""
        snap = self.get(kind, job_id)
        if snap is None:
            raise JobNotFoundError(kind, job_id)
        return snap

    def list(self, kind: str, limit: int = 50, offset: int = 0) -> List[JobSnapshot]:
        model = model_for(kind)
        with self._session() as session:
            rows = session.execute(
                select(model).order_by(model.created_at.desc()).offset(offset).limit(limit)
            ).scalars().all()
            return [JobSnapshot.from_record(kind, job) for job in rows]

    def update(self, kind: str, job_id: str, **fields) -> None:
        """Partial write of arbitrary columns. Raises JobNotFoundError."""
        model = model_for(kind)
        with self._session() as session:
            result = session.execute(
                update(model).where(model.id == job_id).values(**fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise JobNotFoundError(kind, job_id)

    def mark_processing(self, kind: str, job_id: str) -> JobSnapshot:
        """pending -> processing. A no-op for jobs already past pending."""
        model = model_for(kind)
        with self._session() as session:
            result = session.execute(
                update(model)
                .where(model.id == job_id, model.status == PENDING)
                .values(status=PROCESSING, progress=0.0, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.info("%s job %s not pending; leaving state untouched", kind, job_id)
        return self.snapshot(kind, job_id)

    def update_progress(self, kind: str, job_id: str, progress: float) -> bool:
        """Raise stored progress while processing. Returns False when ignored
        (lower than stored, job not processing, or job gone)."""
        model = model_for(kind)
        with self._session() as session:
            result = session.execute(
                update(model)
                .where(model.id == job_id, model.status == PROCESSING,
                       model.progress <= progress)
                .values(progress=progress)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def record_input(self, kind: str, job_id: str, input_size: Optional[int] = None,
                     input_duration: Optional[float] = None) -> bool:
        """Store the probed size and duration of a processing job's input."""
        model = model_for(kind)
        with self._session() as session:
            result = session.execute(
                update(model)
                .where(model.id == job_id, model.status == PROCESSING)
                .values(input_size=input_size, input_duration=input_duration)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def complete(self, kind: str, job_id: str, output_ref: str, output_size: Optional[int],
                 output_files: List[str] = None, **extra) -> bool:
        """processing -> completed. Returns False if the job was already terminal."""
        values = dict(status=COMPLETED, progress=100.0, output_ref=output_ref,
                      output_size=output_size, output_files=output_files,
                      error=None, completed_at=utcnow(), **extra)
        return self._terminal_write(kind, job_id, (PROCESSING,), values)

    def fail(self, kind: str, job_id: str, error: str) -> bool:
        """pending|processing -> failed. Returns False if the job was already terminal."""
        values = dict(status=FAILED, error=error or "Job failed", output_ref=None,
                      output_size=None, output_files=None, completed_at=utcnow())
        return self._terminal_write(kind, job_id, ACTIVE_STATUSES, values)

    def cancel(self, kind: str, job_id: str) -> bool:
        return self.fail(kind, job_id, CANCELLED_ERROR)

    def is_active(self, kind: str, job_id: str) -> bool:
        model = model_for(kind)
        with self._session() as session:
            status = session.execute(
                select(model.status).where(model.id == job_id)
            ).scalar_one_or_none()
        return status in ACTIVE_STATUSES

    def delete(self, kind: str, job_id: str) -> Optional[JobSnapshot]:
        """Remove the record; returns what was deleted (None if missing)."""
        model = model_for(kind)
        with self._session() as session:
            job = session.get(model, job_id)
            if job is None:
                return None
            snapshot = JobSnapshot.from_record(kind, job)
            session.execute(delete(model).where(model.id == job_id))
        logger.info("Deleted %s job %s", kind, job_id)
        return snapshot

    def _terminal_write(self, kind: str, job_id: str, from_statuses, values) -> bool:
        model = model_for(kind)
        with self._session() as session:
            result = session.execute(
                update(model)
                .where(model.id == job_id, model.status.in_(from_statuses))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount > 0:
                return True
            status = session.execute(
                select(model.status).where(model.id == job_id)
            ).scalar_one_or_none()
        if status is None:
            raise JobNotFoundError(kind, job_id)
        logger.warning("Discarding %s write for %s job %s already %s",
                       values["status"], kind, job_id, status)
        return False
