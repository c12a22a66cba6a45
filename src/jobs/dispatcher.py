from dataclasses import replace

import structlog

from src.jobs.errors import ConfigurationError, is_retryable
from src.jobs.queue import MAX_ATTEMPTS, JobQueue, QueuedJob
from src.jobs.registry import ProcessorRegistry
from src.jobs.status import JobStatus, JobStatusTracker
from src.jobs.types import ProcessResult

logger = structlog.get_logger()

RE_ENQUEUED_SUFFIX = "(Re-enqueued for retry)"
MAX_ATTEMPTS_SUFFIX = "(Max retry attempts reached)"


class Dispatcher:
    """Runs one queued job to a terminal outcome or a scheduled retry.

    dispatch() is the only entry point the scheduling loop calls. It never
    raises: processor failures, processor exceptions and status-write errors
    are all turned into a ProcessResult. Only task cancellation propagates.
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: ProcessorRegistry,
        tracker: JobStatusTracker,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.tracker = tracker

    async def dispatch(self, job: QueuedJob) -> ProcessResult:
        """Execute a queued job.

        Args:
            job: Job just taken from the queue

        Returns:
            The processor's result, annotated when a retry was scheduled or
            the retry budget ran out
        """
        logger.info(
            "dispatching_job",
            job_id=job.id,
            job_type=job.type,
            attempt=job.attempt,
            background_job_id=job.background_job_id,
            source="dispatcher",
        )

        processor = self.registry.get_processor(job.type)
        if processor is None:
            message = f"No processor registered for job type: {job.type}"
            logger.error(
                "no_processor_registered",
                job_id=job.id,
                job_type=job.type,
                registered=self.registry.get_registered_job_types(),
                source="dispatcher",
            )
            await self._mark_failed(job, message)
            return ProcessResult.failed(
                message,
                error=ConfigurationError(message),
                should_retry=False,
            )

        try:
            result = await processor.process(job.payload)
        except Exception as e:
            logger.error(
                "processor_raised",
                job_id=job.id,
                job_type=job.type,
                attempt=job.attempt,
                error=str(e),
                error_type=type(e).__name__,
                source="dispatcher",
                exc_info=True,
            )
            result = ProcessResult.failed(
                f"Job processing error: {type(e).__name__}: {e}",
                error=e,
            )
            return await self._handle_failure(job, result)

        if not isinstance(result, ProcessResult):
            message = f"Processor for {job.type} returned {type(result).__name__}, not a ProcessResult"
            result = ProcessResult.failed(message, error=ConfigurationError(message))
            return await self._handle_failure(job, result)

        if result.success:
            logger.info(
                "job_dispatch_succeeded",
                job_id=job.id,
                job_type=job.type,
                attempt=job.attempt,
                source="dispatcher",
            )
            return result

        return await self._handle_failure(job, result)

    def should_retry(self, result: ProcessResult) -> bool:
        """Decide whether a failed result is worth another attempt.

        An explicit should_retry from the processor wins. Otherwise the
        error is classified by its kind, falling back to the keyword list
        for untyped errors.
        """
        if result.should_retry is not None:
            return result.should_retry
        return is_retryable(result.error)

    async def _handle_failure(self, job: QueuedJob, result: ProcessResult) -> ProcessResult:
        if not result.status_updated:
            error_text = str(result.error) if result.error is not None else result.message
            await self._mark_failed(job, error_text)

        retry = self.should_retry(result)

        logger.warning(
            "job_dispatch_failed",
            job_id=job.id,
            job_type=job.type,
            attempt=job.attempt,
            max_attempts=MAX_ATTEMPTS,
            message=result.message,
            will_retry=retry,
            source="dispatcher",
        )

        if not retry:
            return result

        if await self._was_canceled(job):
            logger.info(
                "job_retry_skipped_canceled",
                job_id=job.id,
                background_job_id=job.background_job_id,
                source="dispatcher",
            )
            return replace(result, should_retry=False)

        new_job_id = self.queue.re_enqueue(job)
        if new_job_id is None:
            return replace(result, message=f"{result.message} {MAX_ATTEMPTS_SUFFIX}")

        await self._mark_requeued(job, new_job_id)
        return replace(result, message=f"{result.message} {RE_ENQUEUED_SUFFIX}")

    async def _mark_failed(self, job: QueuedJob, error_message: str) -> None:
        background_job_id = job.background_job_id
        if not background_job_id:
            logger.warning(
                "job_missing_background_job_id",
                job_id=job.id,
                job_type=job.type,
                source="dispatcher",
            )
            return

        try:
            await self.tracker.to_failed(
                background_job_id,
                error_message,
                metadata={"attempt": job.attempt, "jobType": job.type},
            )
        except Exception as e:
            logger.error(
                "job_status_update_failed",
                job_id=job.id,
                background_job_id=background_job_id,
                target_status="failed",
                error=str(e),
                error_type=type(e).__name__,
                source="dispatcher",
            )

    async def _mark_requeued(self, job: QueuedJob, new_job_id: str) -> None:
        background_job_id = job.background_job_id
        if not background_job_id:
            return

        next_attempt = job.attempt + 1
        try:
            await self.tracker.to_queued(
                background_job_id,
                f"Re-enqueued for retry (attempt {next_attempt}/{MAX_ATTEMPTS})",
                metadata={"queueJobId": new_job_id, "attempt": next_attempt},
            )
        except Exception as e:
            logger.error(
                "job_status_update_failed",
                job_id=job.id,
                background_job_id=background_job_id,
                target_status="queued",
                error=str(e),
                error_type=type(e).__name__,
                source="dispatcher",
            )

    async def _was_canceled(self, job: QueuedJob) -> bool:
        background_job_id = job.background_job_id
        if not background_job_id:
            return False

        try:
            stored = await self.tracker.get_job(background_job_id)
        except Exception as e:
            logger.error(
                "job_status_lookup_failed",
                job_id=job.id,
                background_job_id=background_job_id,
                error=str(e),
                error_type=type(e).__name__,
                source="dispatcher",
            )
            return False

        return stored is not None and stored.status == JobStatus.CANCELED.value
