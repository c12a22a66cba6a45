import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

import structlog

logger = structlog.get_logger()

MAX_ATTEMPTS = 3
MIN_PRIORITY = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueuedJob:
    """Represents a job in the queue."""
    id: str
    type: str
    payload: dict
    priority: int
    created_at: datetime = field(default_factory=_now)
    attempt: int = 1

    @property
    def background_job_id(self) -> Optional[str]:
        return self.payload.get("backgroundJobId")

    @property
    def session_id(self) -> Optional[str]:
        return self.payload.get("sessionId")


class JobQueue:
    """In-memory priority queue of pending jobs.

    Jobs are kept sorted by priority (highest first) and creation time
    (oldest first). The sort is stable, so jobs with equal priority and
    timestamp keep their insertion order. The list is re-sorted after every
    mutation, which lets dequeue() and peek() read the head directly.

    The queue does no locking. It must be owned by a single scheduling loop;
    running dispatches from several workers needs external mutual exclusion.
    """

    def __init__(self) -> None:
        """Initialize an empty job queue."""
        self._jobs: list[QueuedJob] = []
        self._retries = 0
        logger.info("job_queue_initialized", max_attempts=MAX_ATTEMPTS, source="queue")

    def _sort(self) -> None:
        self._jobs.sort(key=lambda job: (-job.priority, job.created_at))

    def enqueue(self, job_type: str, payload: dict, priority: int) -> str:
        """Add a new job to the queue.

        Args:
            job_type: Type of job to process (e.g., 'claude_request')
            payload: Job data, including backgroundJobId and sessionId
            priority: Higher values are served first

        Returns:
            Queue-local job ID

        Example:
            job_id = queue.enqueue('claude_request', payload, priority=5)
        """
        if not job_type:
            raise ValueError("Job type is required")
        if payload is None:
            raise ValueError("Job payload is required")
        if priority is None:
            raise ValueError("Job priority is required")

        job = QueuedJob(
            id=str(uuid.uuid4()),
            type=job_type,
            payload=payload,
            priority=priority,
            created_at=_now(),
        )
        self._jobs.append(job)
        self._sort()

        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job_type,
            priority=priority,
            background_job_id=job.background_job_id,
            queue_size=len(self._jobs),
            source="queue",
        )

        return job.id

    def re_enqueue(self, job: QueuedJob) -> Optional[str]:
        """Schedule another attempt of a failed job.

        The new entry gets a fresh ID and timestamp, the next attempt number
        and a priority lowered by one (never below MIN_PRIORITY), so a job
        that keeps failing cannot starve fresh work.

        Args:
            job: The job whose attempt just failed

        Returns:
            New queue-local job ID, or None if the retry budget is exhausted
        """
        if job.attempt >= MAX_ATTEMPTS:
            logger.warning(
                "job_retry_budget_exhausted",
                job_id=job.id,
                job_type=job.type,
                attempt=job.attempt,
                max_attempts=MAX_ATTEMPTS,
                background_job_id=job.background_job_id,
                source="queue",
            )
            return None

        retry = replace(
            job,
            id=str(uuid.uuid4()),
            created_at=_now(),
            attempt=job.attempt + 1,
            priority=max(MIN_PRIORITY, job.priority - 1),
        )
        self._jobs.append(retry)
        self._sort()
        self._retries += 1

        logger.info(
            "job_re_enqueued",
            job_id=retry.id,
            previous_job_id=job.id,
            job_type=retry.type,
            attempt=retry.attempt,
            priority=retry.priority,
            background_job_id=retry.background_job_id,
            source="queue",
        )

        return retry.id

    def dequeue(self) -> Optional[QueuedJob]:
        """Remove and return the next job, or None if the queue is empty."""
        if not self._jobs:
            return None

        job = self._jobs.pop(0)

        logger.debug(
            "job_dequeued",
            job_id=job.id,
            job_type=job.type,
            priority=job.priority,
            attempt=job.attempt,
            source="queue",
        )

        return job

    def peek(self) -> Optional[QueuedJob]:
        """Return the next job without removing it."""
        return self._jobs[0] if self._jobs else None

    def remove(self, job_id: str) -> bool:
        """Remove a job by its queue-local ID.

        Returns:
            True if a job was removed
        """
        removed = self._remove_where(lambda job: job.id == job_id)
        return removed > 0

    def remove_by_session_id(self, session_id: str) -> int:
        """Remove every queued job belonging to a session.

        Returns:
            Number of jobs removed
        """
        removed = self._remove_where(lambda job: job.session_id == session_id)
        if removed:
            logger.info(
                "session_jobs_removed_from_queue",
                session_id=session_id,
                removed=removed,
                source="queue",
            )
        return removed

    def remove_by_background_job_id(self, background_job_id: str) -> int:
        """Remove every queued entry for a background job.

        Returns:
            Number of jobs removed
        """
        removed = self._remove_where(
            lambda job: job.background_job_id == background_job_id
        )
        if removed:
            logger.info(
                "background_job_removed_from_queue",
                background_job_id=background_job_id,
                removed=removed,
                source="queue",
            )
        return removed

    def _remove_where(self, predicate) -> int:
        before = len(self._jobs)
        self._jobs = [job for job in self._jobs if not predicate(job)]
        self._sort()
        return before - len(self._jobs)

    def contains_background_job(self, background_job_id: str) -> bool:
        return any(job.background_job_id == background_job_id for job in self._jobs)

    def size(self) -> int:
        return len(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    def get_stats(self) -> dict:
        """Get statistics about queued jobs.

        Returns:
            Dict with total count, counts by priority and by type, and the
            number of retries scheduled since the queue was created
        """
        return {
            "total": len(self._jobs),
            "by_priority": dict(Counter(job.priority for job in self._jobs)),
            "by_type": dict(Counter(job.type for job in self._jobs)),
            "retries": self._retries,
        }

    def clear(self) -> None:
        """Drop every queued job."""
        cleared = len(self._jobs)
        self._jobs = []
        logger.info("job_queue_cleared", cleared=cleared, source="queue")
