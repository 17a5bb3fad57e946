"""Live progress over Server-Sent Events, with a polling fallback."""

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from api.deps import get_publisher, get_store
from api.routes.jobs import check_kind
from core.events import Heartbeat, dump_event
from core.streaming import stream_progress
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(item) -> str:
    if isinstance(item, Heartbeat):
        return ": heartbeat\n\n"
    return f"data: {dump_event(item)}\n\n"


@router.get("/{kind}/{job_id}/progress")
async def progress_stream(request: Request, job_id: str, kind: str = Depends(check_kind),
                          store=Depends(get_store), publisher=Depends(get_publisher)):
    # 404 before the stream starts
    await run_in_threadpool(store.snapshot, kind, job_id)
    interval = request.app.state.heartbeat_interval

    async def events():
        async for item in stream_progress(kind, job_id, store, publisher, interval):
            yield format_sse(item)

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/{kind}/{job_id}/progress/poll")
def progress_poll(job_id: str, kind: str = Depends(check_kind), store=Depends(get_store)):
    return store.snapshot(kind, job_id).to_event().model_dump(mode="json", exclude_none=True)
