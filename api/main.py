from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, jobs, progress
from config.settings import PublisherConfig, QueueConfig, settings
from core.errors import (InfrastructureError, InvalidJobParametersError, JobNotFoundError)
from core.publisher import ProgressPublisher, create_publisher
from db.store import JobStore
from workers.queue import WorkQueue
import logging

logger = logging.getLogger(__name__)


def create_app(store: JobStore = None, publisher: ProgressPublisher = None,
               queue=None) -> FastAPI:
    queue = queue or WorkQueue(QueueConfig.from_settings(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.publisher.start()
        yield
        await app.state.publisher.aclose()

    app = FastAPI(title="Media Jobs API", version="1.0.0", lifespan=lifespan)
    app.state.store = store or JobStore()
    app.state.publisher = publisher or create_publisher(PublisherConfig.from_settings(settings))
    app.state.queue = queue
    app.state.heartbeat_interval = settings.heartbeat_interval

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
    app.include_router(progress.router, prefix="/api/jobs", tags=["progress"])

    @app.exception_handler(JobNotFoundError)
    async def not_found(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidJobParametersError)
    async def invalid_parameters(request: Request, exc: InvalidJobParametersError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(InfrastructureError)
    async def unavailable(request: Request, exc: InfrastructureError):
        logger.error("Infrastructure error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})

    @app.get("/")
    async def root():
        return {"message": "Media Jobs API", "version": "1.0.0"}

    return app


app = create_app()
