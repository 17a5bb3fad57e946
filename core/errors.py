"""
Media job error types.

Execution errors end a job as ``failed`` and are shown to the user.
Infrastructure errors are never written to a job; they propagate so the
queue can redeliver the task.
"""


class MediaJobError(Exception):
    """Base exception for all media job failures."""
    pass


class ExecutionError(MediaJobError):
    """The encoder failed or produced no usable output."""
    pass


class ExecutionTimeoutError(ExecutionError):
    """The encoder ran past its timeout and was killed."""
    pass


class JobExecutionError(MediaJobError):
    """Raised by a runner after the failure was recorded on the job."""

    def __init__(self, kind: str, job_id: str, reason: str):
        self.kind = kind
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"{kind} job {job_id} failed: {reason}")


class JobCancelledError(MediaJobError):
    """The job was cancelled or deleted while it was running."""

    def __init__(self, kind: str, job_id: str):
        self.kind = kind
        self.job_id = job_id
        super().__init__(f"{kind} job {job_id} was cancelled")


class InfrastructureError(MediaJobError):
    """Store, broker or pub/sub backend unavailable; safe to retry."""
    pass


class JobNotFoundError(MediaJobError):

    def __init__(self, kind: str, job_id: str):
        self.kind = kind
        self.job_id = job_id
        super().__init__(f"{kind} job not found: {job_id}")


class InvalidJobParametersError(MediaJobError):
    """Kind parameters rejected before the job is enqueued."""
    pass
