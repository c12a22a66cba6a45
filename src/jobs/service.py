from typing import TYPE_CHECKING, Optional

import structlog

from src.jobs.queue import JobQueue
from src.jobs.status import JobStatusRepository, JobStatusTracker

if TYPE_CHECKING:
    from src.storage.jobs import BackgroundJob

logger = structlog.get_logger()


class JobService:
    """Creates, enqueues and cancels background jobs.

    Keeps the in-memory queue and the persisted job status in step: a job
    enters the queue and becomes 'queued' together, and cancellation drops
    queued entries before sweeping the stored status.
    """

    def __init__(
        self,
        repository: JobStatusRepository,
        queue: JobQueue,
        tracker: JobStatusTracker,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.tracker = tracker

    async def create_background_job(
        self,
        session_id: str,
        api_type: str,
        task_type: str,
        raw_input: str = "",
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        include_syntax: bool = False,
        temperature: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> "BackgroundJob":
        """Create the persisted record for a new job in 'created' status."""
        if not session_id or not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("Invalid session ID provided for background job creation")

        return await self.repository.create(
            session_id,
            api_type,
            task_type,
            raw_input,
            include_syntax,
            temperature,
            True,
            metadata={
                **(metadata or {}),
                "modelUsed": model,
                "maxOutputTokens": max_output_tokens,
                "temperature": temperature,
            },
            model_used=model,
            max_output_tokens=max_output_tokens,
        )

    async def enqueue_job(self, job_type: str, payload: dict, priority: int = 1) -> str:
        """Put a job on the queue and mark its background job as queued.

        Args:
            job_type: Processor tag
            payload: Job data, must include backgroundJobId and sessionId
            priority: Higher values are served first

        Returns:
            Queue-local job ID

        Raises:
            ValueError: If the payload is incomplete or the background job
                is already waiting in the queue
        """
        if not payload or not payload.get("backgroundJobId"):
            raise ValueError("Job payload must include backgroundJobId")

        session_id = payload.get("sessionId")
        if not session_id or not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("Job payload must include a valid sessionId")

        background_job_id = payload["backgroundJobId"]
        if self.queue.contains_background_job(background_job_id):
            raise ValueError(f"Background job {background_job_id} is already queued")

        job_type = str(getattr(job_type, "value", job_type))
        queue_job_id = self.queue.enqueue(job_type, payload, priority)

        try:
            await self.tracker.to_queued(
                background_job_id,
                f"Queued for processing ({job_type})",
                metadata={
                    "queueJobId": queue_job_id,
                    "priority": priority,
                    "jobTypeForWorker": job_type,
                    "attempt": 1,
                },
            )
        except Exception:
            self.queue.remove(queue_job_id)
            raise

        return queue_job_id

    async def submit_job(
        self,
        session_id: str,
        job_type: str,
        api_type: str,
        task_type: str,
        payload: Optional[dict] = None,
        priority: int = 1,
        raw_input: str = "",
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> tuple["BackgroundJob", str]:
        """Create a background job and enqueue it in one step.

        Returns:
            Tuple of (created BackgroundJob, queue-local job ID)
        """
        job = await self.create_background_job(
            session_id,
            api_type,
            task_type,
            raw_input=raw_input,
            model=model,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
        )

        overrides = {
            "model": model,
            "maxOutputTokens": max_output_tokens,
            "temperature": temperature,
        }
        worker_payload = {
            **(payload or {}),
            **{key: value for key, value in overrides.items() if value is not None},
            "backgroundJobId": job.id,
            "sessionId": session_id,
        }
        queue_job_id = await self.enqueue_job(job_type, worker_payload, priority)

        logger.info(
            "job_submitted",
            background_job_id=job.id,
            queue_job_id=queue_job_id,
            job_type=str(getattr(job_type, "value", job_type)),
            priority=priority,
            source="service",
        )

        return job, queue_job_id

    async def cancel_job(self, background_job_id: str, reason: Optional[str] = None) -> bool:
        """Cancel a single job, dropping any queued attempt first.

        A job already being processed keeps running until its processor
        notices; its final status write is then refused.
        """
        removed = self.queue.remove_by_background_job_id(background_job_id)
        canceled = await self.tracker.to_canceled(background_job_id, reason)

        logger.info(
            "job_cancel_requested",
            background_job_id=background_job_id,
            removed_from_queue=removed,
            canceled=canceled,
            source="service",
        )

        return canceled

    async def cancel_session(self, session_id: str) -> dict:
        """Cancel every pending and active job of a session.

        Returns:
            Dict with the number of queue entries removed and jobs canceled
        """
        removed = self.queue.remove_by_session_id(session_id)
        canceled = await self.tracker.cancel_session_jobs(session_id)

        return {"removed_from_queue": removed, "canceled": canceled}
