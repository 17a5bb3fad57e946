from datetime import datetime
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from db.store import JobSnapshot

class JobRequest(BaseModel):
    input_ref: str
    kind_parameters: Dict[str, Any] = {}

class JobResponse(BaseModel):
    job_id: str
    kind: str
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

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot) -> "JobResponse":
        return cls(**snapshot.model_dump())

class SubmitResponse(BaseModel):
    job_id: str
    kind: str
    status: str
    message: str

class DeleteResponse(BaseModel):
    job_id: str
    kind: str
    action: str  # "cancelled" or "deleted"
