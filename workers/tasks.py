from celery import Task
from celery.utils.log import get_task_logger
from workers.celery_app import celery_app, queue_config, task_name
from config.settings import PublisherConfig, RunnerConfig, settings
from core.errors import InfrastructureError, JobExecutionError
from core.progress import ProgressThrottle
from core.publisher import create_publisher
from core.registry import create_runner
from db.store import JobStore

logger = get_task_logger(__name__)


class MediaTask(Task):
    """Base task holding one store and publisher per worker process."""

    kind: str = None
    autoretry_for = (InfrastructureError,)
    max_retries = queue_config.max_retries
    retry_backoff = True
    retry_backoff_max = queue_config.retry_backoff_max
    retry_jitter = True

    _store = None
    _publisher = None

    @property
    def store(self) -> JobStore:
        if MediaTask._store is None:
            MediaTask._store = JobStore()
        return MediaTask._store

    @property
    def publisher(self):
        if MediaTask._publisher is None:
            MediaTask._publisher = create_publisher(PublisherConfig.from_settings(settings))
            MediaTask._publisher.start()
        return MediaTask._publisher

    def run_job(self, job_id: str) -> dict:
        publisher_config = PublisherConfig.from_settings(settings)
        runner = create_runner(
            self.kind, self.store, self.publisher, RunnerConfig.from_settings(settings),
            throttle_factory=lambda: ProgressThrottle(publisher_config.min_interval,
                                                      publisher_config.min_delta))
        if self.request.retries:
            logger.info("Retry %d for %s job %s", self.request.retries, self.kind, job_id)
        # JobExecutionError is not retried; the job is already failed
        snapshot = runner.run(job_id)
        if snapshot is None:
            return {"job_id": job_id, "status": "missing"}
        return {"job_id": job_id, "status": snapshot.status}

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        if isinstance(exc, InfrastructureError):
            # the job may still be healthy; leave its record untouched
            logger.error("Giving up on %s job %s after %d retries: %s",
                         self.kind, args[0] if args else "?", self.request.retries, exc)
        elif isinstance(exc, JobExecutionError):
            logger.info("Task %s recorded failure of %s job %s", task_id, exc.kind, exc.job_id)
        else:
            logger.error("Task %s for %s job failed: %s", task_id, self.kind, exc)


@celery_app.task(bind=True, base=MediaTask, name=task_name("compress"), kind="compress")
def compress_video(self, job_id: str):
    return self.run_job(job_id)


@celery_app.task(bind=True, base=MediaTask, name=task_name("convert"), kind="convert")
def convert_video(self, job_id: str):
    return self.run_job(job_id)


@celery_app.task(bind=True, base=MediaTask, name=task_name("trim"), kind="trim")
def trim_video(self, job_id: str):
    return self.run_job(job_id)


@celery_app.task(bind=True, base=MediaTask, name=task_name("gif"), kind="gif")
def create_gif(self, job_id: str):
    return self.run_job(job_id)


@celery_app.task(bind=True, base=MediaTask, name=task_name("thumbnail"), kind="thumbnail")
def generate_thumbnails(self, job_id: str):
    return self.run_job(job_id)


@celery_app.task(bind=True, base=MediaTask, name=task_name("frames"), kind="frames")
def extract_frames(self, job_id: str):
    return self.run_job(job_id)


@celery_app.task(bind=True, base=MediaTask, name=task_name("audio"), kind="audio")
def extract_audio(self, job_id: str):
    return self.run_job(job_id)
