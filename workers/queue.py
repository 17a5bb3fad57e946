"""Producer side of the work queue: validate, record, enqueue."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kombu.exceptions import OperationalError as BrokerError
from pydantic import BaseModel, Field

from config.settings import QueueConfig
from core.errors import InfrastructureError, InvalidJobParametersError
from core.params import parse_params
from db.store import JobSnapshot, JobStore
from workers.celery_app import celery_app, queue_name, task_name

logger = logging.getLogger(__name__)


class QueueTask(BaseModel):
    job_id: str
    kind: str
    kind_parameters: Dict[str, Any] = {}
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkQueue:
    def __init__(self, config: QueueConfig = None, app=celery_app):
        self.config = config
        self.app = app

    def enqueue(self, kind: str, task: QueueTask) -> str:
        """Send the kind's task to its queue. Returns the broker task id."""
        if kind != task.kind:
            raise InvalidJobParametersError(f"Task for {task.kind} sent to {kind} queue")
        try:
            result = self.app.send_task(task_name(kind), args=[task.job_id],
                                        queue=queue_name(kind))
        except BrokerError as e:
            raise InfrastructureError(f"Could not enqueue {kind} job {task.job_id}: {e}") from e
        logger.info("Enqueued %s job %s as task %s", kind, task.job_id, result.id)
        return result.id


def submit_job(store: JobStore, queue: WorkQueue, kind: str, input_ref: str,
               kind_parameters: Optional[Dict[str, Any]] = None) -> JobSnapshot:
    """Create a pending job and enqueue it.

    Parameters are validated before anything is written. If the broker
    rejects the task the job is marked failed so it never sits pending.
    """
    params = parse_params(kind, kind_parameters or {})
    stored = params.model_dump(mode="json", exclude_none=True)
    snapshot = store.create(kind, input_ref, stored)
    try:
        queue.enqueue(kind, QueueTask(job_id=snapshot.job_id, kind=kind,
                                      kind_parameters=stored))
    except InfrastructureError as e:
        store.fail(kind, snapshot.job_id, f"Failed to enqueue job: {e}")
        raise
    return snapshot
