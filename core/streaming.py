"""
Progress streams for API clients.

The order matters: subscribe first, then read the snapshot. Anything published
between the two is delivered by the subscription, and anything published
before it is reflected in the snapshot, so a client that connects late still
sees the current state followed by every later change.
"""

import logging
from typing import AsyncIterator, Union

from fastapi.concurrency import run_in_threadpool

from core.events import HEARTBEAT, Heartbeat, ProgressEvent
from core.publisher import ProgressPublisher
from db.store import JobStore

logger = logging.getLogger(__name__)


async def stream_progress(kind: str, job_id: str, store: JobStore,
                          publisher: ProgressPublisher,
                          heartbeat_interval: float = 30.0
                          ) -> AsyncIterator[Union[ProgressEvent, Heartbeat]]:
    """Yield the job's current state, then live events until a terminal one.

    Raises JobNotFoundError before anything is yielded if the job does not
    exist. Yields ``HEARTBEAT`` after each quiet ``heartbeat_interval``.
    """
    subscription = await publisher.subscribe(kind, job_id)
    try:
        snapshot = await run_in_threadpool(store.snapshot, kind, job_id)
        yield snapshot.to_event()
        if snapshot.terminal:
            return
        floor = snapshot.progress
        while True:
            event = await subscription.get(heartbeat_interval)
            if event is None:
                yield HEARTBEAT
                continue
            if event.terminal:
                yield event
                return
            # published before the snapshot was read
            if event.progress < floor:
                continue
            floor = event.progress
            yield event
    finally:
        await subscription.close()
        logger.debug("Closed progress stream for %s job %s", kind, job_id)
