"""Main entry point for the background job service - FastAPI Server."""

import asyncio
import dataclasses
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from src.config import settings
from src.jobs import Dispatcher, JobQueue, JobStatusTracker, JobType, ProcessorRegistry, start_worker
from src.jobs.processors import build_registry
from src.jobs.service import JobService
from src.storage import BackgroundJobRepository

VERSION = "0.1.0"

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(structlog.stdlib.logging, settings.log_level.upper())
    ),
)

logger = structlog.get_logger()

API_TYPES = {
    JobType.GEMINI_REQUEST: "gemini",
    JobType.CLAUDE_REQUEST: "claude",
    JobType.VOICE_TRANSCRIPTION: "whisper",
}


class SubmitJobRequest(BaseModel):
    """Request model for creating and enqueuing a job."""
    session_id: str = Field(min_length=1)
    job_type: JobType
    task_type: str
    priority: int = Field(default=settings.job_default_priority, ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    raw_input: str = ""
    model: Optional[str] = None
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None


class SubmitJobResponse(BaseModel):
    """Response model for job submission."""
    background_job_id: str
    queue_job_id: str
    status: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    queue_size: int


def create_app(
    repository: Optional[BackgroundJobRepository] = None,
    registry: Optional[ProcessorRegistry] = None,
    run_worker: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Queue, registry and dispatcher are created here and kept on app.state;
    nothing is registered as a side effect of importing a module.

    Args:
        repository: Job status repository. Uses settings if not provided.
        registry: Processor registry. Built from settings if not provided.
        run_worker: Whether to start the scheduling loop on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info("job_service_starting", version=VERSION, source="api")

        repo = repository or BackgroundJobRepository()
        await repo.initialize()

        deleted = await repo.cleanup_old_jobs(settings.job_retention_days)
        logger.info("old_jobs_cleaned", count=deleted, source="api")

        queue = JobQueue()
        tracker = JobStatusTracker(repo)
        app.state.repository = repo
        app.state.queue = queue
        app.state.registry = registry or build_registry(tracker)
        app.state.dispatcher = Dispatcher(queue, app.state.registry, tracker)
        app.state.service = JobService(repo, queue, tracker)

        worker_task = None
        if run_worker:
            worker_task = await start_worker(queue, app.state.dispatcher)

        yield

        if worker_task is not None:
            worker_task.cancel()
            with suppress(asyncio.CancelledError):
                await worker_task
        logger.info("job_service_shutdown", source="api")

    app = FastAPI(
        title="Background Job Service",
        description="Queues and dispatches AI provider jobs for the desktop app",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=VERSION,
            queue_size=request.app.state.queue.size(),
        )

    @app.post("/jobs", response_model=SubmitJobResponse, status_code=202)
    async def submit_job(body: SubmitJobRequest, request: Request):
        """Create a background job and put it on the queue."""
        service: JobService = request.app.state.service
        try:
            job, queue_job_id = await service.submit_job(
                body.session_id,
                body.job_type,
                API_TYPES[body.job_type],
                body.task_type,
                payload=body.payload,
                priority=body.priority,
                raw_input=body.raw_input,
                model=body.model,
                max_output_tokens=body.max_output_tokens,
                temperature=body.temperature,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return SubmitJobResponse(
            background_job_id=job.id,
            queue_job_id=queue_job_id,
            status="queued",
        )

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        """Get the stored status of a job."""
        job = await request.app.state.repository.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return dataclasses.asdict(job)

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, request: Request):
        """Cancel a single job."""
        if await request.app.state.repository.get(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

        canceled = await request.app.state.service.cancel_job(job_id, "Canceled by user")
        if not canceled:
            raise HTTPException(status_code=409, detail=f"Job {job_id} is already finished")
        return {"job_id": job_id, "canceled": True}

    @app.get("/sessions/{session_id}/jobs")
    async def list_session_jobs(session_id: str, request: Request):
        """List every job of a session, newest first."""
        jobs = await request.app.state.repository.find_by_session_id(session_id)
        return [dataclasses.asdict(job) for job in jobs]

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str, request: Request):
        """Cancel every pending and active job of a session."""
        result = await request.app.state.service.cancel_session(session_id)
        return {"session_id": session_id, **result}

    @app.get("/queue/stats")
    async def queue_stats(request: Request):
        """Queue statistics and registered job types."""
        return {
            "queue": request.app.state.queue.get_stats(),
            "job_types": request.app.state.registry.get_registered_job_types(),
            "jobs_by_status": await request.app.state.repository.get_job_stats(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
    )
