from celery import Celery
from kombu import Queue
from config.settings import QueueConfig, settings
from core.registry import KINDS

queue_config = QueueConfig.from_settings(settings)


def queue_name(kind: str) -> str:
    return f"media.{kind}"


def task_name(kind: str) -> str:
    return f"media.{kind}.run"


celery_app = Celery(
    "media_jobs",
    broker=queue_config.broker_url,
    backend=queue_config.broker_url,
    include=["workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # at-least-once: unacked tasks return to the queue if a worker dies
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # must outlast the longest job or Redis hands a running task to a second worker
    broker_transport_options={"visibility_timeout": int(queue_config.visibility_timeout)},
    worker_max_tasks_per_child=50,
    task_queues=[Queue(queue_name(kind)) for kind in KINDS],
    task_routes={task_name(kind): {"queue": queue_name(kind)} for kind in KINDS},
    result_expires=86400,
)
