import asyncio
from typing import Optional

import structlog

from src.config import settings
from src.jobs.dispatcher import Dispatcher
from src.jobs.queue import JobQueue

logger = structlog.get_logger()


async def start_worker(
    queue: JobQueue,
    dispatcher: Dispatcher,
    poll_interval: Optional[float] = None,
) -> asyncio.Task:
    """Launch the scheduling loop as a background task.

    Jobs are dispatched one at a time, in queue order. Run a single loop per
    queue; JobQueue itself is not locked.

    Args:
        queue: Queue the loop takes jobs from
        dispatcher: Runs each job and schedules its retries
        poll_interval: Idle wait in seconds. Defaults to settings.job_poll_interval.

    Returns:
        The loop task; cancel it on shutdown
    """
    interval = poll_interval if poll_interval is not None else settings.job_poll_interval
    task = asyncio.create_task(
        _scheduling_loop(queue, dispatcher, interval),
        name="job-scheduler",
    )
    logger.info("scheduler_started", poll_interval=interval, source="worker")
    return task


async def run_once(queue: JobQueue, dispatcher: Dispatcher) -> bool:
    """Dispatch the next queued job, if any.

    Returns:
        True if a job was dispatched
    """
    job = queue.dequeue()
    if job is None:
        return False

    logger.info(
        "scheduler_picked_job",
        job_id=job.id,
        job_type=job.type,
        priority=job.priority,
        attempt=job.attempt,
        queue_size=queue.size(),
        source="worker",
    )

    # Awaited in full: a retry of this job only exists once dispatch returns.
    result = await dispatcher.dispatch(job)

    logger.info(
        "scheduler_job_done",
        job_id=job.id,
        job_type=job.type,
        success=result.success,
        message=result.message,
        source="worker",
    )

    return True


async def _scheduling_loop(queue: JobQueue, dispatcher: Dispatcher, poll_interval: float) -> None:
    idle = False
    while True:
        try:
            if await run_once(queue, dispatcher):
                idle = False
                continue

            if not idle:
                logger.debug("scheduler_idle", source="worker")
                idle = True
            await asyncio.sleep(poll_interval)

        except asyncio.CancelledError:
            logger.info("scheduler_stopped", source="worker")
            raise

        except Exception as e:
            # dispatch() contains processor errors; this is a fault in the loop
            logger.error(
                "scheduler_error",
                error=str(e),
                error_type=type(e).__name__,
                source="worker",
                exc_info=True,
            )
            await asyncio.sleep(settings.worker_error_backoff_seconds)
