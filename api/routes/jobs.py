from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse
from api.deps import get_publisher, get_queue, get_store
from api.schemas import DeleteResponse, JobRequest, JobResponse, SubmitResponse
from config.settings import settings
from core.events import FailedEvent
from core.errors import InfrastructureError
from core.registry import KINDS
from db.models import CANCELLED_ERROR
from utils import storage
from workers.queue import submit_job
from pathlib import Path
from typing import List
import json
import logging
import os
import shutil
import uuid

logger = logging.getLogger(__name__)

router = APIRouter()


def check_kind(kind: str) -> str:
    if kind not in KINDS:
        raise HTTPException(404, f"Unknown job kind: {kind}")
    return kind


def _submit(kind, input_ref, kind_parameters, store, queue) -> SubmitResponse:
    snapshot = submit_job(store, queue, kind, input_ref, kind_parameters)
    return SubmitResponse(job_id=snapshot.job_id, kind=kind, status=snapshot.status,
                          message=f"{kind} job queued")


@router.post("/{kind}", response_model=SubmitResponse, status_code=202)
def create_job(request: JobRequest, kind: str = Depends(check_kind),
               store=Depends(get_store), queue=Depends(get_queue)):
    if not request.input_ref.startswith(storage.S3_PREFIX) and not os.path.isfile(request.input_ref):
        raise HTTPException(400, f"Input not found: {request.input_ref}")
    return _submit(kind, request.input_ref, request.kind_parameters, store, queue)


@router.post("/{kind}/upload", response_model=SubmitResponse, status_code=202)
def upload_job(file: UploadFile = File(...), kind_parameters: str = Form("{}"),
               kind: str = Depends(check_kind), store=Depends(get_store),
               queue=Depends(get_queue)):
    try:
        params = json.loads(kind_parameters or "{}")
    except ValueError:
        raise HTTPException(422, "kind_parameters must be a JSON object")
    if not isinstance(params, dict):
        raise HTTPException(422, "kind_parameters must be a JSON object")

    name = f"{uuid.uuid4().hex}_{Path(file.filename or 'input').name}"
    upload_dir = Path(settings.storage_dir) / "uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    local_path = str(upload_dir / name)
    with open(local_path, "wb") as f:
        shutil.copyfileobj(file.file, f)

    input_ref = local_path
    if storage.s3_enabled():
        input_ref = storage.upload_artifact(local_path, f"uploads/{name}")
        os.remove(local_path)
    return _submit(kind, input_ref, params, store, queue)


@router.get("/{kind}", response_model=List[JobResponse])
def list_jobs(kind: str = Depends(check_kind), limit: int = 50, offset: int = 0,
              store=Depends(get_store)):
    return [JobResponse.from_snapshot(s) for s in store.list(kind, limit=limit, offset=offset)]


@router.get("/{kind}/{job_id}", response_model=JobResponse)
def get_job(job_id: str, kind: str = Depends(check_kind), store=Depends(get_store)):
    return JobResponse.from_snapshot(store.snapshot(kind, job_id))


@router.delete("/{kind}/{job_id}", response_model=DeleteResponse)
def delete_job(job_id: str, kind: str = Depends(check_kind), store=Depends(get_store),
               publisher=Depends(get_publisher)):
    """Cancel an active job; delete a finished one with its artifacts."""
    snapshot = store.snapshot(kind, job_id)
    if not snapshot.terminal and store.cancel(kind, job_id):
        # the worker notices on its next poll and kills the encoder
        try:
            publisher.publish(kind, job_id, FailedEvent(job_id=job_id, kind=kind,
                                                        error=CANCELLED_ERROR,
                                                        progress=snapshot.progress))
        except InfrastructureError as e:
            logger.warning("Could not publish cancellation of %s job %s: %s", kind, job_id, e)
        return DeleteResponse(job_id=job_id, kind=kind, action="cancelled")

    deleted = store.delete(kind, job_id)
    if deleted is not None:
        for ref in deleted.output_files or []:
            storage.remove_artifact(ref)
        storage.remove_artifact(deleted.output_ref)
        storage.remove_artifact(deleted.thumbnail_ref)
        storage.remove_artifact(str(Path(settings.storage_dir) / "outputs" / kind / job_id))
    return DeleteResponse(job_id=job_id, kind=kind, action="deleted")


@router.get("/{kind}/{job_id}/download")
def download_output(job_id: str, kind: str = Depends(check_kind), store=Depends(get_store)):
    snapshot = store.snapshot(kind, job_id)
    if snapshot.status != "completed" or not snapshot.output_ref:
        raise HTTPException(409, "Output not ready")
    if snapshot.output_files:
        raise HTTPException(409, "Job produced multiple files; see output_files")
    path = snapshot.output_ref
    if path.startswith(storage.S3_PREFIX):
        path = storage.download_artifact(path)
    if not os.path.isfile(path):
        raise HTTPException(404, "Output artifact missing")
    return FileResponse(path, filename=os.path.basename(path))
