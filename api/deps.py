from fastapi import Request
from core.publisher import ProgressPublisher
from db.store import JobStore
from workers.queue import WorkQueue


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_publisher(request: Request) -> ProgressPublisher:
    return request.app.state.publisher


def get_queue(request: Request) -> WorkQueue:
    return request.app.state.queue
