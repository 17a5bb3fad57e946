"""Progress events published for live job updates."""

from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _EventBase(BaseModel):
    job_id: str
    kind: str
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return self.status in ("completed", "failed")


class ProcessingEvent(_EventBase):
    status: Literal["processing"] = "processing"
    progress: float
    phase: Optional[str] = None
    current: Optional[int] = None
    total: Optional[int] = None


class CompletedEvent(_EventBase):
    status: Literal["completed"] = "completed"
    progress: float = 100.0
    output_ref: str
    output_size: Optional[int] = None
    output_files: Optional[List[str]] = None


class FailedEvent(_EventBase):
    status: Literal["failed"] = "failed"
    error: str
    progress: Optional[float] = None


class PendingEvent(_EventBase):
    """Only produced from a store snapshot; runners never publish it."""
    status: Literal["pending"] = "pending"
    progress: float = 0.0


ProgressEvent = Annotated[
    Union[PendingEvent, ProcessingEvent, CompletedEvent, FailedEvent],
    Field(discriminator="status"),
]

_adapter = TypeAdapter(ProgressEvent)


def parse_event(data: Union[str, bytes, dict]) -> ProgressEvent:
    if isinstance(data, dict):
        return _adapter.validate_python(data)
    return _adapter.validate_json(data)


def dump_event(event: ProgressEvent) -> str:
    return event.model_dump_json(exclude_none=True)


class Heartbeat:
    """Keep-alive marker yielded by progress streams during silence."""

    def __repr__(self):
        return "Heartbeat()"


HEARTBEAT = Heartbeat()
