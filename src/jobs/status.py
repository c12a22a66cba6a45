"""Job status state machine and the helpers that drive status transitions.

Every write made on behalf of a job goes through JobStatusTracker, which
checks the transition against ALLOWED_TRANSITIONS before asking the
repository to persist it.
"""

import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional, Protocol

import structlog

from src.jobs.errors import (
    RETRYABLE_API_ERROR_TYPES,
    map_status_code_to_error_type,
)

if TYPE_CHECKING:
    from src.storage.jobs import BackgroundJob

logger = structlog.get_logger()

MAX_ERROR_MESSAGE_LENGTH = 500
MAX_API_ERROR_TEXT_LENGTH = 100


class JobStatus(str, Enum):
    CREATED = "created"
    QUEUED = "queued"
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


ACTIVE_STATUSES = frozenset(
    {JobStatus.CREATED, JobStatus.QUEUED, JobStatus.PREPARING, JobStatus.RUNNING}
)
TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset(
        {JobStatus.QUEUED, JobStatus.PREPARING, JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED}
    ),
    JobStatus.QUEUED: frozenset(
        {JobStatus.PREPARING, JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED}
    ),
    JobStatus.PREPARING: frozenset(
        {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED}
    ),
    JobStatus.RUNNING: frozenset(
        {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}
    ),
    # failed -> queued only happens when the dispatcher has scheduled a retry
    JobStatus.FAILED: frozenset({JobStatus.FAILED, JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    try:
        return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]
    except ValueError:
        return False


def is_terminal(status: str) -> bool:
    return status in {s.value for s in TERMINAL_STATUSES}


def summarize_error(message: Optional[str], limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Collapse whitespace and truncate an error message for display."""
    if message is None or not message.strip():
        return "Job failed without a specific error message."
    text = " ".join(message.split())
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require_job_id(job_id: str, operation: str) -> None:
    if not job_id or not isinstance(job_id, str) or not job_id.strip():
        raise ValueError(f"Invalid job ID provided for {operation}")


class JobStatusRepository(Protocol):
    """Storage the status helpers write through."""

    async def create(
        self,
        session_id: str,
        api_type: str,
        task_type: str,
        raw_input: str = "",
        include_syntax: bool = False,
        temperature: Optional[float] = None,
        visible: bool = True,
        **kwargs: Any,
    ) -> "BackgroundJob":
        ...

    async def get(self, job_id: str) -> Optional["BackgroundJob"]:
        ...

    async def update_status(self, job_id: str, status: JobStatus, **fields: Any) -> None:
        ...

    async def find_by_session_id(self, session_id: str) -> list["BackgroundJob"]:
        ...


class JobStatusTracker:
    """Applies status transitions to background jobs.

    Each helper validates the job ID, loads the current job, refuses
    transitions the state machine does not allow, and writes the status
    together with the timestamps and metadata that transition carries.
    Helpers return True when a write happened.
    """

    def __init__(self, repository: JobStatusRepository) -> None:
        self.repository = repository

    async def _load_for_transition(
        self, job_id: str, target: JobStatus
    ) -> Optional["BackgroundJob"]:
        job = await self.repository.get(job_id)
        if job is None:
            logger.warning(
                "job_not_found_for_transition",
                job_id=job_id,
                target_status=target.value,
                source="status",
            )
            return None

        if not can_transition(job.status, target):
            logger.warning(
                "illegal_status_transition",
                job_id=job_id,
                current_status=job.status,
                target_status=target.value,
                source="status",
            )
            return None

        return job

    async def to_queued(
        self,
        job_id: str,
        status_message: str,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Mark a job as waiting in the queue."""
        _require_job_id(job_id, "to_queued")

        job = await self._load_for_transition(job_id, JobStatus.QUEUED)
        if job is None:
            return False

        now = _now_ms()
        await self.repository.update_status(
            job_id,
            JobStatus.QUEUED,
            clear_end_time=True,
            status_message=status_message,
            metadata={**(metadata or {}), "queuedAt": now, "lastUpdateTime": now},
        )
        return True

    async def to_preparing(
        self,
        job_id: str,
        status_message: str = "Setting up API request",
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> bool:
        """Mark a job as preparing its provider request."""
        _require_job_id(job_id, "to_preparing")

        job = await self._load_for_transition(job_id, JobStatus.PREPARING)
        if job is None:
            return False

        await self.repository.update_status(
            job_id,
            JobStatus.PREPARING,
            status_message=status_message,
            model_used=model,
            max_output_tokens=max_output_tokens,
            metadata={
                "modelUsed": model,
                "maxOutputTokens": max_output_tokens,
                "lastUpdateTime": _now_ms(),
            },
        )
        return True

    async def to_running(
        self,
        job_id: str,
        api_type: str = "gemini",
        status_message: Optional[str] = None,
    ) -> bool:
        """Mark a job as actively processing.

        The start time is kept if it was already set and any end time is
        cleared, since the job is still in progress.
        """
        _require_job_id(job_id, "to_running")

        job = await self._load_for_transition(job_id, JobStatus.RUNNING)
        if job is None:
            return False

        now = _now_ms()
        await self.repository.update_status(
            job_id,
            JobStatus.RUNNING,
            start_time=job.start_time or now,
            clear_end_time=True,
            status_message=status_message or f"Processing with {api_type.upper()} API",
            metadata={
                "lastUpdateTime": now,
                "apiType": api_type,
                "runningUpdateCount": job.metadata.get("runningUpdateCount", 0) + 1,
            },
        )
        return True

    async def to_completed(
        self,
        job_id: str,
        response: Optional[str],
        tokens_sent: Optional[int] = None,
        tokens_received: Optional[int] = None,
        total_tokens: Optional[int] = None,
        model_used: Optional[str] = None,
    ) -> bool:
        """Mark a job as successfully completed with its final response."""
        _require_job_id(job_id, "to_completed")

        if response is None:
            logger.warning("job_completed_without_response", job_id=job_id, source="status")
            response = "Job completed with no output content."

        job = await self._load_for_transition(job_id, JobStatus.COMPLETED)
        if job is None:
            return False

        now = _now_ms()
        start_time = job.start_time or job.created_at or now
        sent = tokens_sent if tokens_sent is not None else job.tokens_sent
        received = tokens_received if tokens_received is not None else job.tokens_received
        total = total_tokens if total_tokens is not None else (sent or 0) + (received or 0)

        await self.repository.update_status(
            job_id,
            JobStatus.COMPLETED,
            start_time=start_time,
            end_time=now,
            response=response,
            status_message="Completed successfully",
            error_message="",
            tokens_sent=sent,
            tokens_received=received,
            total_tokens=total,
            model_used=model_used,
            metadata={
                "lastUpdateTime": now,
                "completedAt": now,
                "duration": now - start_time,
            },
        )
        return True

    async def to_failed(
        self,
        job_id: str,
        error_message: Optional[str],
        partial_response: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Mark a job as failed, keeping a display-sized error message."""
        _require_job_id(job_id, "to_failed")

        job = await self._load_for_transition(job_id, JobStatus.FAILED)
        if job is None:
            return False

        now = _now_ms()
        start_time = job.start_time or job.created_at or now
        extra = {
            **(metadata or {}),
            "lastUpdateTime": now,
            "failedAt": now,
            "duration": now - start_time,
            "hasError": True,
        }
        if partial_response:
            extra["partialResponse"] = True

        await self.repository.update_status(
            job_id,
            JobStatus.FAILED,
            start_time=start_time,
            end_time=now,
            response=partial_response or None,
            status_message="Failed due to error",
            error_message=summarize_error(error_message),
            metadata=extra,
        )
        return True

    async def to_canceled(
        self,
        job_id: str,
        reason: Optional[str] = None,
        partial_response: Optional[str] = None,
    ) -> bool:
        """Mark a job as canceled.

        Whatever response the job had accumulated is left in place; a
        partial response is only written when one is supplied.
        """
        _require_job_id(job_id, "to_canceled")

        if reason is None or not reason.strip():
            reason = "Job canceled without a specific reason."

        job = await self._load_for_transition(job_id, JobStatus.CANCELED)
        if job is None:
            return False

        now = _now_ms()
        start_time = job.start_time or job.created_at or now
        extra = {
            "lastUpdateTime": now,
            "cancelledAt": now,
            "duration": now - start_time,
            "userCancelled": True,
        }
        if partial_response:
            extra["partialResponse"] = True

        await self.repository.update_status(
            job_id,
            JobStatus.CANCELED,
            start_time=start_time,
            end_time=now,
            response=partial_response or None,
            status_message="Canceled by user interaction",
            error_message=reason,
            metadata=extra,
        )
        return True

    async def cancel_session_jobs(
        self,
        session_id: str,
        reason: str = "Canceled due to session action or cleanup",
        exclude_task_types: Optional[Iterable[str]] = None,
    ) -> int:
        """Cancel every active job of a session.

        Returns:
            Number of jobs canceled
        """
        if not session_id or not session_id.strip():
            raise ValueError("Invalid session ID provided for cancel_session_jobs")

        excluded = set(exclude_task_types or ())
        jobs = await self.repository.find_by_session_id(session_id)
        active = [
            job for job in jobs
            if job.status in {s.value for s in ACTIVE_STATUSES}
            and job.task_type not in excluded
        ]

        canceled = 0
        for job in active:
            try:
                if await self.to_canceled(job.id, reason):
                    canceled += 1
            except Exception as e:
                logger.error(
                    "job_cancel_failed",
                    job_id=job.id,
                    session_id=session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    source="status",
                )

        logger.info(
            "session_jobs_canceled",
            session_id=session_id,
            canceled=canceled,
            active=len(active),
            source="status",
        )

        return canceled

    async def handle_api_error(
        self,
        job_id: str,
        status_code: int,
        error_text: str,
        api_type: str = "gemini",
    ) -> bool:
        """Mark a job failed from a provider HTTP error response."""
        _require_job_id(job_id, "handle_api_error")

        error_type = map_status_code_to_error_type(status_code)
        snippet = error_text[:MAX_API_ERROR_TEXT_LENGTH]
        if len(error_text) > MAX_API_ERROR_TEXT_LENGTH:
            snippet += "..."
        message = f"{api_type.upper()} API Error [{error_type.value}]: {status_code} {snippet}"

        return await self.to_failed(
            job_id,
            message,
            metadata={
                "error": {
                    "errorType": error_type.value,
                    "statusCode": status_code,
                    "apiType": api_type,
                    "isRetryable": error_type in RETRYABLE_API_ERROR_TYPES,
                },
                "lastErrorType": error_type.value,
                "lastErrorStatus": status_code,
                "lastErrorTime": _now_ms(),
            },
        )

    async def get_job(self, job_id: str) -> Optional["BackgroundJob"]:
        if not job_id or not job_id.strip():
            logger.warning("invalid_job_id_lookup", source="status")
            return None
        return await self.repository.get(job_id)

    async def is_job_active(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        return job is not None and job.status in {s.value for s in ACTIVE_STATUSES}
